"""Brief job queue: durable jobs, pipelines and the polling worker.

Why not Celery / Dramatiq / RQ?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The queue state *is* the product state here. Every job belongs to a brief,
and the brief's status is re-derived from its jobs after each transition, so
job rows have to live in the same database as briefs and be queryable by
parent, type and status at any time. Key responsibilities a broker-backed
queue does not cover:

- Per-brief job listing and status aggregation from durable job rows.
- Attempt accounting that survives worker crashes (attempts increment on
  claim, not on failure) plus heartbeat-based recovery of abandoned jobs.
- An audit trail of every transition for operators.

Workers coordinate only through conditional ``UPDATE`` statements on the
shared SQLite file; any number of worker processes can poll it without a
broker, leader election or extra infrastructure.
"""
