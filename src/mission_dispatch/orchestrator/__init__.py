"""Dispatch-and-retry core for agent task orchestration.

Why plain SQLite transactions instead of a lock service?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Every invariant that has to survive concurrent callers is a single row
predicate: an attempt number is taken once, an attempt is closed once, a
task gets one outcome record, a health counter moves by one. Each of those
maps onto an ``INSERT ... ON CONFLICT DO NOTHING`` or an
``UPDATE ... WHERE <predicate>`` whose row count tells the caller whether
it won. Several console processes can share one database file without any
in-process mutex.

Remote calls to the agent runtime never run inside a transaction. The
dispatch engine commits the attempt first and delivers afterwards; the
completion handler commits and only then publishes a retry intent.
"""
