"""
Newsletter Mail Queue

Background job processing for bulk email delivery: a durable queue of newsletter
send jobs, a single active worker guarded by heartbeat-based sessions, and chunked
dispatch to a batch email API with per-recipient success/failure accounting.
"""

__version__ = "1.0.0"
