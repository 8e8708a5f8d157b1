"""HTTP API adapters.

Provides endpoints for the clinic front end and other systems:
- Workflow commands (leads, triage, appointments, consents, quotes, ...)
- Episode listings and timelines
- Manual automation runs
"""
