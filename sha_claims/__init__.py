"""SHA claims processing service: workflow engine, job queues and SHA integration."""

__version__ = "0.1.0"
