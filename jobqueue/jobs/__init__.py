"""
Job lifecycle engine.

This package provides:
- The persisted job record and its payload codec
- Selection and locking against a shared jobs table
- Retry with steep backoff and a terminal failure policy
- Fixed-interval and calendar recurrence
"""
