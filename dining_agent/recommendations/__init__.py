"""
Recommendation funnel.

Responsibilities:
- Load the read-only restaurant corpus and its precomputed embeddings.
- Hard-filter candidates by location mode, occasion, cuisine, budget and timing.
- Score the survivors by embedding similarity, then blend in social proof.
- Hand the top of the re-ranked list to a selector that picks at most three.
- Record a per-stage debug bundle when the caller asks for one.
"""
