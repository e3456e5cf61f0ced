"""Generation, composition and orchestration services."""
