"""Tests for the health check endpoints."""

from __future__ import annotations


def test_health_check(client):
    """GET /health returns 200 with status=healthy."""
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["service"] == "settlement-engine"


def test_system_health_check(client):
    """GET /health/system runs the storage checks."""
    response = client.get("/health/system")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["issues"] == []
