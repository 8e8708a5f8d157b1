"""Command-line interface adapters.

Provides CLI commands for operating careflow:
- list / show / timeline / counts: inspect episodes
- advance: apply a trigger to an episode
- process / purge: run automation by hand
"""
