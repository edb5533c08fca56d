"""
                Restaurant Dispatch Service

Order lifecycle and driver dispatch backend for a restaurant ordering
platform: status state machine, nearest-driver assignment, push
notification fan-out and the stale-order sweep.
"""

__version__ = "1.0.0"
