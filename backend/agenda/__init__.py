"""Durable job scheduler for appointment reminders and recurring session chains."""

__version__ = "0.1.0"
