"""
Three-layer cache (memory, persistent, predictive) with single-flight fetches.
"""
