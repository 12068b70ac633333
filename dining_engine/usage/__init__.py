"""
Daily request/cost governor and the per-minute rate limiter for AI calls.
"""
