# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration-backed credential provider.

Token acquisition is owned by an external OAuth component; this provider
only hands out what it was given. ``force_refresh`` re-reads the token from
the environment so an operator (or a sidecar) can rotate it without a
restart.
"""

from __future__ import annotations

import os

from .logger import get_logger

DEFAULT_TOKEN_ENV = "CRS_CRM_ACCESS_TOKEN"


class StaticTokenProvider:
    """Serve named access tokens from configuration.

    Attributes:
        env_var: Environment variable consulted on ``force_refresh``.
        refresh_count: Number of forced refreshes performed.
    """

    def __init__(
        self,
        tokens: dict[str, str | None] | None = None,
        *,
        env_var: str = DEFAULT_TOKEN_ENV,
        logger=None,
    ):
        self._tokens: dict[str, str | None] = dict(tokens or {})
        self.env_var = env_var
        self.logger = logger or get_logger()
        self.refresh_count = 0

    async def get_valid_token(self, name: str) -> str | None:
        return self._tokens.get(name)

    async def force_refresh(self, name: str) -> str | None:
        """Reload the token of ``name`` from the environment.

        The previous token is kept when the variable is unset.
        """
        self.refresh_count += 1
        fresh = os.environ.get(self.env_var)
        if fresh:
            self._tokens[name] = fresh
            self.logger.info("Credential '%s' reloaded from %s", name, self.env_var)
        else:
            self.logger.warning("Credential '%s' refresh requested but %s is not set", name, self.env_var)
        return self._tokens.get(name)
