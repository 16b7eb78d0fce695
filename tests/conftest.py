"""Shared fixtures: settings, a fake Salesforce connection and a provider wired to it."""

from unittest.mock import MagicMock

import pytest

from salesforce_mcp_gateway.config import Settings
from salesforce_mcp_gateway.connection import SalesforceConnectionProvider

ACCOUNT_DESCRIBE = {
    "name": "Account",
    "label": "Account",
    "fields": [
        {"name": "Id", "label": "Account ID", "type": "id", "nillable": False},
        {"name": "Name", "label": "Account Name", "type": "string", "nillable": False},
        {"name": "Website", "label": "Website", "type": "url", "nillable": True},
    ],
}


@pytest.fixture
def settings():
    return Settings(
        instance_url="https://example.my.salesforce.com",
        access_token="test_access_token",
    )


@pytest.fixture
def fake_sf():
    sf = MagicMock(name="Salesforce")
    sf.query.return_value = {"totalSize": 0, "done": True, "records": []}
    sf.Account.describe.return_value = ACCOUNT_DESCRIBE
    sf.search.return_value = {"searchRecords": []}
    return sf


@pytest.fixture
def connector(fake_sf):
    calls = []

    async def connect(settings):
        calls.append(settings)
        return fake_sf

    connect.calls = calls
    return connect


@pytest.fixture
def provider(settings, connector):
    return SalesforceConnectionProvider(settings, connector=connector)
