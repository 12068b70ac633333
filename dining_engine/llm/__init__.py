"""
AI recommendation layer.

Responsibilities:
- Manage Groq API configuration and credentials.
- Build prompts from the user's profile, context and scored candidates.
- Call Groq in JSON mode to re-rank candidates and explain the picks.
- Retry transient failures with backoff; surface everything else so the
  orchestrator can fall back to the rule-based ranking.
"""
