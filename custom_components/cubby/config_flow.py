"""Config flow for Cubby."""

from __future__ import annotations

from typing import Any

import voluptuous as vol
from homeassistant import config_entries
from homeassistant.core import callback
from homeassistant.data_entry_flow import FlowResult

from .const import (
    CONF_AUTO_BACKUP,
    CONF_REVIEW_EXPIRATION_DAYS,
    DEFAULT_AUTO_BACKUP,
    DEFAULT_REVIEW_EXPIRATION_DAYS,
    DOMAIN,
)


def options_schema(options: dict[str, Any]) -> vol.Schema:
    """Build the options form schema, defaulting to the current values."""

    return vol.Schema(
        {
            vol.Required(
                CONF_REVIEW_EXPIRATION_DAYS,
                default=options.get(CONF_REVIEW_EXPIRATION_DAYS, DEFAULT_REVIEW_EXPIRATION_DAYS),
            ): vol.All(vol.Coerce(int), vol.Range(min=0)),
            vol.Required(
                CONF_AUTO_BACKUP,
                default=options.get(CONF_AUTO_BACKUP, DEFAULT_AUTO_BACKUP),
            ): bool,
        }
    )


class CubbyConfigFlow(config_entries.ConfigFlow, domain=DOMAIN):
    """Handle a config flow for Cubby."""

    VERSION = 1

    async def async_step_user(
        self, user_input: dict[str, Any] | None = None
    ) -> FlowResult:
        """Handle the initial step.

        Single-instance setup. Create entry immediately.
        """
        if self._async_current_entries():
            return self.async_abort(reason="single_instance_allowed")

        return self.async_create_entry(title="Cubby", data={})

    @staticmethod
    @callback
    def async_get_options_flow(
        config_entry: config_entries.ConfigEntry,
    ) -> config_entries.OptionsFlow:
        return CubbyOptionsFlow()


class CubbyOptionsFlow(config_entries.OptionsFlow):
    """Review expiry and auto-backup options."""

    async def async_step_init(
        self, user_input: dict[str, Any] | None = None
    ) -> FlowResult:
        if user_input is not None:
            return self.async_create_entry(title="", data=user_input)

        return self.async_show_form(
            step_id="init",
            data_schema=options_schema(dict(self.config_entry.options)),
        )
