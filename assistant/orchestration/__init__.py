"""
Orchestration package.

Wave scheduling of dependent agent dispatches, the sub-agent tool loop, the
per-conversation engine and the orchestrator-facing tools.
"""
