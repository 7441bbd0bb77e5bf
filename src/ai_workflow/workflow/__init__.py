"""Background workflow for AI content processing.

Submitted content flows through a chain of queued jobs: brain-dump parsing,
AI content generation, embedding generation and feedback learning.  Jobs live
in a SQLite table and are claimed by lane workers with a compare-and-set
``queued -> running`` update, executed synchronously, and either completed,
rescheduled with linear backoff, or moved to ``dead``.

Why not Celery / RQ?
~~~~~~~~~~~~~~~~~~~~
The interesting part is not the queue but what surrounds it: checkpointed
content state that survives retries, failure containment between lifecycle
and downstream stages, and per-item leases that keep two workers off the
same stage.  A broker would add an operational dependency to a
single-machine, SQLite-only tool while all of that would still be custom
task logic.
"""
