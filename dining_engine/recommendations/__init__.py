"""
Recommendation engine.

Responsibilities:
- Validate profiles and restaurant records at the collaborator boundary.
- Exclude restaurants unsafe for the user's allergies and strict diets.
- Pick a strategy from the request context and score candidates with it.
- Frame each pick against the user's remaining budget.
- Compose all of the above, plus optional AI re-ranking, per request.
"""
