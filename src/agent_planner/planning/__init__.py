"""Dependency analysis, clustering, plan assembly and acceptance."""
