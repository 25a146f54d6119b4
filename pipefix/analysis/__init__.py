"""Failure analysis: rule-based classification enriched by one reasoning round trip."""
