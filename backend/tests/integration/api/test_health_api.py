"""
Integration tests for the health endpoint.
"""

import pytest
from httpx import AsyncClient

from billing_core.core.config import settings


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    """
    Test the liveness check.

    WHY: Load balancers call it without credentials; the scheduler is
    not started because the test client skips the lifespan.
    """
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["version"] == settings.VERSION
    assert data["scheduler"]["running"] is False
