"""
Scheduling Services

Date policy, clock and periodic task primitives.

The sweeps themselves live in reminder_scheduler and job_runner, which depend on
the lifecycle services and are imported from there directly.
"""

from .clock import SystemClock, ManualClock, utcnow
from .date_policy import DatePolicyConfig, CycleDates, compute_cycle
from .periodic import PeriodicTask

__all__ = [
    'SystemClock',
    'ManualClock',
    'utcnow',
    'DatePolicyConfig',
    'CycleDates',
    'compute_cycle',
    'PeriodicTask',
]
