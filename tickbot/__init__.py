"""
tickbot - automation core: cron schedules and a capability-aware task queue
"""

__version__ = "0.1.0"
__logo__ = "⏱"
