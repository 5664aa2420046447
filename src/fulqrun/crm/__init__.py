"""CRM module -- leads, contacts and opportunities.

Provides SQLAlchemy models, Pydantic schemas, CRMRepository for async CRUD,
the rule-based LeadScoringEngine, and CRMService for scoring, conversion
and PEAK stage progression.
"""
