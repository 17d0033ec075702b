"""
App module for StreamBot.

Frontends (prefix commands, HTTP control API, console) and the orchestrator.
"""
