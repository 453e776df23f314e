"""Deadline monitoring package."""

from pulsekeeper.monitoring.eligibility import EligibilityMonitor

__all__ = ["EligibilityMonitor"]
