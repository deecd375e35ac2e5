"""Orchestration core: task attempts, leases, callbacks and retry scheduling.

Why a SQLite-backed queue and not a broker?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The problem here is not message delivery, it is *ownership*: exactly one agent
may report the outcome of a task attempt, leases expire when heartbeats stop,
and the only state that survives a retry is the operator's State Params.
Each of those rules is one conditional UPDATE against the ``tasks`` table, so
the table itself is the lease manager and the single source of truth for
which ``lock_id`` is current.
"""
