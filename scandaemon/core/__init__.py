"""Scan daemon core: tier policy, admission, queueing, orchestration,
aggregation, persistence, notification and usage tracking.
"""
