"""Click commands for swarm-handoff."""
