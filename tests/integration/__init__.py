"""
Integration tests for syn2mas.

These tests require an actual PostgreSQL instance, provisioned through
testcontainers. The Synapse and MAS databases live in two schemas of the
same database.

Tests are skipped automatically if Docker or testcontainers is not available.

Run integration tests:
    pytest tests/integration/ -v

Skip integration tests:
    pytest tests/ -v -m "not integration"
"""
