"""
LLM integration layer.

Responsibilities:
- Manage Groq API configuration and credentials.
- Build the final-selection prompt from the conversation and funnel candidates.
- Call Groq under a time budget, retrying once with a shorter budget.
- Surface timeouts and malformed output as typed errors so callers can fall back.
"""
