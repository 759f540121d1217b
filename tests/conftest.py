"""
Pytest configuration and fixtures.
"""

from pathlib import Path
from typing import AsyncIterator

import pytest
import pytest_asyncio

from notion_sync.storage.database import DatabaseStorage


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """SQLite database file private to one test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'notion_sync.db'}"


@pytest_asyncio.fixture
async def storage(database_url: str) -> AsyncIterator[DatabaseStorage]:
    """Initialized storage on a fresh SQLite database."""
    storage = DatabaseStorage(database_url)
    await storage.initialize()
    try:
        yield storage
    finally:
        await storage.close()


def make_page_data(
    page_id: str = "page-1",
    title: str = "Hello",
    last_edited_time: str = "2024-01-01T00:00:00.000Z",
    properties: dict | None = None,
) -> dict:
    """A page object the way the API returns it."""
    props = {
        "Name": {
            "id": "title",
            "type": "title",
            "title": [{"type": "text", "plain_text": title}],
        }
    }
    props.update(properties or {})
    return {
        "object": "page",
        "id": page_id,
        "created_time": "2023-12-01T00:00:00.000Z",
        "last_edited_time": last_edited_time,
        "archived": False,
        "url": f"https://www.notion.so/{page_id}",
        "properties": props,
    }


@pytest.fixture
def page_data():
    """Factory for API page objects."""
    return make_page_data
