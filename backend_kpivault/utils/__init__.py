"""Small shared helpers (address normalisation, metric id hashing, processing keys)."""
