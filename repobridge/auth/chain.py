"""Ordered credential lookup across session, local and remote stores."""

from __future__ import annotations

import logging

from repobridge.auth.models import Credential
from repobridge.auth.stores import CredentialStore

logger = logging.getLogger(__name__)


class TokenSourceChain:
    """Tries session, then local, then remote; stops at the first hit.

    Freshness is not checked here. A remote hit is written back to the local
    store so the next lookup is served without a remote call.
    """

    def __init__(
        self,
        session: CredentialStore | None = None,
        local: CredentialStore | None = None,
        remote: CredentialStore | None = None,
    ) -> None:
        self.session = session
        self.local = local
        self.remote = remote

    async def acquire(self, provider: str, subject: str) -> Credential | None:
        # A credential already marked invalid does not stop the chain; a later
        # store may hold the replacement from a fresh sign-in.
        stale: Credential | None = None
        for label, store in (("session", self.session), ("local", self.local)):
            if store is None:
                continue
            cred = await store.get(subject, provider)
            if cred is None or not cred.token:
                continue
            if cred.is_valid:
                logger.debug("%s credential for %s found in %s store", provider, subject, label)
                return cred
            stale = stale or cred

        if self.remote is not None:
            cred = await self.remote.get(subject, provider)
            if cred is not None and cred.token and (cred.is_valid or stale is None):
                logger.debug("%s credential for %s fetched from remote store", provider, subject)
                if self.local is not None:
                    await self.local.put(subject, provider, cred)
                return cred

        if stale is None:
            logger.debug("No %s credential for %s in any store", provider, subject)
        return stale

    async def store(self, credential: Credential) -> None:
        """Write a fresh or refreshed credential everywhere it is looked up."""
        for store in (self.remote, self.local, self.session):
            if store is not None:
                await store.put(credential.subject, credential.provider, credential)

    async def invalidate(self, provider: str, subject: str) -> None:
        for store in (self.remote, self.local, self.session):
            if store is not None:
                await store.mark_invalid(subject, provider)
