"""
jobqueue: a database-backed job queue.

Application code enqueues jobs into a shared table; worker processes poll the
table, claim jobs through an atomic conditional update, run them and record
success, failure or the next recurrence.
"""

__version__ = "0.1.0"
