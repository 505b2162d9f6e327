"""
Gateway Supervisor - keeps a messaging gateway agent alive and its skills current.

Supervises a single gateway process with crash recovery, syncs its skills
from a git repository on a schedule, and exposes a small HTTP control surface.
"""

__version__ = "0.1.0"
