"""AI-driven code-change orchestration pipeline.

This package turns an operator's natural-language request into a pull
request and then tracks its fate, providing:
- Policy validation and agent instruction building
- Sandbox provisioning and a process-wide sandbox registry
- Change-request state machine with document-store persistence
- Live plan tracking for multi-step requests
- Coding agent execution, commit, push, and PR creation
- GitHub webhook reconciliation (merge, CI checks, deployments)
"""
