"""Recognition credential provider.

The backend issues short-lived realtime tokens; the session asks for a
fresh one on every start and on every recognition reconnect.
"""

import logging

import aiohttp

from .errors import CredentialError

logger = logging.getLogger(__name__)


class CredentialProvider:
    """Fetch realtime recognition tokens from the backend.

    Example::

        provider = CredentialProvider("http://localhost:8080/api/token/rt")
        token = await provider.fetch_token()

    """

    def __init__(self, token_url: str, timeout_s: float = 10.0):
        self.token_url = token_url
        self.timeout_s = timeout_s

    async def fetch_token(self) -> str:
        """Request a new token.

        Raises:
            CredentialError: If the backend is unreachable or answers without a token

        """
        timeout = aiohttp.ClientTimeout(total=self.timeout_s)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.token_url, json={}) as response:
                    if response.status >= 400:
                        raise CredentialError(f"Failed to get token: HTTP {response.status} {response.reason}")
                    data = await response.json(content_type=None)
        except CredentialError:
            raise
        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            logger.error(f"Error fetching token from {self.token_url}: {e}")
            raise CredentialError(f"Failed to get token: {e}") from e

        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise CredentialError("Token endpoint returned no token")

        logger.debug("Fetched recognition token")
        return str(token)

    async def __call__(self) -> str:
        return await self.fetch_token()
