"""Qualification module -- MEDDPICC scoring and PEAK stage gates.

Provides the default MEDDPICCConfig catalogue, pure scoring functions,
versioned per-organization configuration storage and the cached
MEDDPICCScoringService used by the opportunity and dashboard routes.
"""
