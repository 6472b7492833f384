"""
Embeddings layer for the vector retrieval stage.

Responsibilities:
- Load a lightweight sentence-transformer model.
- Precompute embeddings for the restaurant corpus (offline).
- Encode the funnel's query text at request time.
"""
