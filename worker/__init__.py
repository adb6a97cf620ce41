"""
Worker module for podslice jobs.

Each worker process:
- Resolves its ordinal from the job completion index
- Waits until every peer of its group is reachable
- Reports rendezvous progress over HTTP
- Hands off to the workload with the accelerator runtime environment set
"""

__version__ = "0.1.0"
