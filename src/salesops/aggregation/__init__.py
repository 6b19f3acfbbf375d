"""Aggregation layer -- Cache Store, Aggregator and derived analytics."""
