"""Candidate fixes: synthesis, per-candidate sandbox validation, selection."""
