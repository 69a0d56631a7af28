"""Shared fixtures for Cubby tests.

Core modules are tested against plain ``Repository`` instances. Integration
tests use the real Home Assistant ``hass`` fixture provided by
pytest-homeassistant-custom-component.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
from custom_components.cubby.const import DOMAIN
from custom_components.cubby.repository import Repository
from homeassistant.config_entries import ConfigEntryState
from homeassistant.core import HomeAssistant
from pytest_homeassistant_custom_component.common import MockConfigEntry


@pytest.fixture
def repo() -> Repository:
    return Repository()


@pytest.fixture
def config_dir(hass: HomeAssistant, tmp_path: Path) -> Path:
    """Point the Home Assistant config dir at a temp dir for backup files."""

    hass.config.config_dir = str(tmp_path)
    return tmp_path


@pytest.fixture
async def setup_entry(
    hass: HomeAssistant, enable_custom_integrations: None, config_dir: Path
) -> AsyncGenerator[MockConfigEntry, None]:
    """Set up a Cubby config entry and unload it after the test."""

    entry = MockConfigEntry(domain=DOMAIN, title="Cubby", data={}, options={})
    entry.add_to_hass(hass)
    assert await hass.config_entries.async_setup(entry.entry_id)
    await hass.async_block_till_done()
    yield entry
    if entry.state is ConfigEntryState.LOADED:
        await hass.config_entries.async_unload(entry.entry_id)
        await hass.async_block_till_done()
