"""Fleet coordinator for data-collection workers.

Crawler workers are stateless pollers: they register a capability set
(market regions and report types), heartbeat, pull work, run the extraction
out of process and report back. Everything that must be decided centrally
lives here:

- Atomic task claims over SQLite (conditional status transitions), so no
  two pollers ever hold the same task.
- Liveness sweeps that take silent workers offline and hand their tasks
  back to the queue.
- A deterministic failure classifier whose verdict drives retry policy.
- A keyed, deduplicated retry backlog with exponential backoff and
  reconciliation against produced output.
"""
