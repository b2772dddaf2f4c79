"""HTTP adapter for the front (submitter) side."""
