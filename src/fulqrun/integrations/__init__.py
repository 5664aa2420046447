"""Integrations module -- third-party connectors and their management.

BaseIntegration carries the shared HTTP retry, field mapping and sync log
plumbing; Slack, monday.com, Microsoft Graph, SharePoint and QuickBooks
connectors subclass it. IntegrationService manages stored connections.
"""
