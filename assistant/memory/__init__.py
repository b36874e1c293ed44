"""Memory agent, search-first skill gate and conversation compaction."""
