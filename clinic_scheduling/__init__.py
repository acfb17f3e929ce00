"""Clinic call-handling conversation: identity check, booking, rescheduling, cancellation."""

__version__ = "0.1.0"
