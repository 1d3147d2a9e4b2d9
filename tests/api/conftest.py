"""
Fixtures for the HTTP route tests.

The app runs on a real ReconciliationContainer whose settings, store and
Confluence client are overridden with in-process test doubles.
"""

import httpx  # type: ignore
import pytest  # type: ignore
from dependency_injector import providers  # type: ignore
from fastapi.testclient import TestClient  # type: ignore

from blueprint_sync.containers.container import ReconciliationContainer, register_job_handlers
from blueprint_sync.main import create_app
from blueprint_sync.sources.client.confluence.confluence import ConfluenceClient
from tests.utils.api_helpers import APIHelper


@pytest.fixture
def app_container(store, confluence, test_settings, logger) -> ReconciliationContainer:
    settings = test_settings.app_settings(default_dry_run=True)
    confluence_client = ConfluenceClient.build_from_settings(
        settings.confluence,
        settings.fetch,
        logger=logger,
        transport=httpx.MockTransport(confluence.handler),
    )

    container = ReconciliationContainer()
    container.settings.override(providers.Object(settings))
    container.logger.override(providers.Object(logger))
    container.store.override(providers.Object(store))
    container.confluence_client.override(providers.Object(confluence_client))
    register_job_handlers(container)
    return container


@pytest.fixture
def client(app_container):
    with TestClient(create_app(app_container)) as test_client:
        yield test_client


@pytest.fixture
def api(client) -> APIHelper:
    return APIHelper(client)
