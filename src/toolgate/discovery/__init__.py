"""
Tool discovery: two-phase probing and bounded-parallel directory scans.
"""

from toolgate.discovery.prober import Prober, help_mentions_discovery, parse_descriptor, probe
from toolgate.discovery.scanner import JobOutcome, Scanner, Scheduler

__all__ = [
    "JobOutcome",
    "Prober",
    "Scanner",
    "Scheduler",
    "help_mentions_discovery",
    "parse_descriptor",
    "probe",
]
