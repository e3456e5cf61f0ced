"""Persisted-store and blob-storage collaborators."""
