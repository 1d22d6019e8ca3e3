from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from dragons_keep.config import Settings
from dragons_keep.room import CampaignRoom


@pytest.fixture()
def settings() -> Settings:
    """Hermetic settings: never read the developer's environment or `.env`."""

    return Settings()


@pytest.fixture()
def client(settings: Settings) -> Generator[TestClient, None, None]:
    """A fresh app (and so a fresh SessionRegistry/RoomHub) per test."""

    from dragons_keep.main import create_app

    app = create_app(settings)
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def room() -> CampaignRoom:
    return CampaignRoom("DRGN-TEST", default_speed=30.0, sight_radius=40.0)
