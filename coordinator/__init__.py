"""
Coordinator module for podslice jobs.

Operator-side tooling that plans a job before any worker starts:
- Headless service for per-worker DNS names
- Indexed job with one worker per accelerator host
- Worker environment matching the discovery table
"""

__version__ = "0.1.0"
