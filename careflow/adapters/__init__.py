"""External adapters for the careflow episode workflow.

This package contains all external dependencies (SQLite, Slack, HTTP
servers, etc.) and provides implementations of the core port interfaces.

Adapter Organization:

- store/: Episode, event log and record persistence (SQLite)
- notification/: Staff notifications (stdout, Slack)
- access/: Role-based access policy
- api/: HTTP API receiver and server
- scheduler/: Drives the automation loop
- cli/: Command-line interface
"""
