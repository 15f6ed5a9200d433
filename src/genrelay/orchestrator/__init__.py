"""Generation task orchestration on a single SQLite database.

The scheduler, the callback server and operator commands all coordinate
through conditional updates on the same tables:

- a FIFO task queue drained by at most ``max_concurrency`` workers;
- a token ledger that reserves on dispatch and commits or refunds exactly once;
- a fingerprint-keyed result cache so repeated requests skip the provider;
- a reconciler that settles each attempt once, whether the provider's answer
  arrives by polling or by callback.

No broker is involved. Providers are slow (seconds to minutes per job) and the
throughput of one process is bounded by them, not by SQLite.
"""
