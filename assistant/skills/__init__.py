"""Skill definitions, registry and the timeout-bounded executor."""
