"""Kafka -> A2A task bridge: consumes order, payment and alert events and dispatches each as a task"""

__version__ = "1.0.0"
