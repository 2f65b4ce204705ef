"""Remote secret store: one JSON secret blob per project."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol, runtime_checkable

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from syncvault.exceptions import SecretNotFoundError, SecretStoreError

logger = logging.getLogger(__name__)

_NOT_FOUND = "ResourceNotFoundException"


@runtime_checkable
class SecretStore(Protocol):
    """Protocol for secret blob storage backends."""

    async def get_secret_blob(self, secret_id: str, region: str) -> dict[str, str]:
        """Return the whole blob. Raises SecretNotFoundError if it does not exist."""
        ...

    async def upsert_secret_blob(self, secret_id: str, region: str, values: dict[str, str]) -> None:
        """Merge ``values`` into the blob, creating it when absent."""
        ...


def _decode_blob(secret_id: str, secret_string: str | None) -> dict[str, str]:
    """Decode a blob. A corrupt blob raises so an upsert never replaces it."""
    if not secret_string:
        return {}
    try:
        data = json.loads(secret_string)
    except json.JSONDecodeError as exc:
        msg = f"Secret {secret_id} is not valid JSON: {exc}"
        raise SecretStoreError(msg) from exc
    if not isinstance(data, dict):
        msg = f"Secret {secret_id} is not a JSON object"
        raise SecretStoreError(msg)
    return {str(key): str(value) for key, value in data.items()}


class AwsSecretsManagerStore:
    """AWS Secrets Manager backend.

    boto3 is synchronous; every call runs in a worker thread so the event
    loop keeps serving the watcher and poller.
    """

    def __init__(self, profile: str | None = None) -> None:
        self.profile = profile
        self._clients: dict[str, Any] = {}

    def _client(self, region: str) -> Any:
        client = self._clients.get(region)
        if client is None:
            session = boto3.Session(profile_name=self.profile)
            client = session.client("secretsmanager", region_name=region)
            self._clients[region] = client
        return client

    def _get_sync(self, secret_id: str, region: str) -> dict[str, str]:
        try:
            result = self._client(region).get_secret_value(SecretId=secret_id)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == _NOT_FOUND:
                msg = f"Secret {secret_id} not found in {region}"
                raise SecretNotFoundError(msg) from exc
            msg = f"Failed to read secret {secret_id}: {exc}"
            raise SecretStoreError(msg) from exc
        except BotoCoreError as exc:
            msg = f"Failed to read secret {secret_id}: {exc}"
            raise SecretStoreError(msg) from exc
        return _decode_blob(secret_id, result.get("SecretString"))

    def _upsert_sync(self, secret_id: str, region: str, values: dict[str, str]) -> None:
        client = self._client(region)
        try:
            current = self._get_sync(secret_id, region)
        except SecretNotFoundError:
            try:
                client.create_secret(Name=secret_id, SecretString=json.dumps(values))
            except (ClientError, BotoCoreError) as exc:
                msg = f"Failed to create secret {secret_id}: {exc}"
                raise SecretStoreError(msg) from exc
            logger.info("Created secret %s in %s", secret_id, region)
            return
        try:
            client.put_secret_value(
                SecretId=secret_id, SecretString=json.dumps({**current, **values})
            )
        except (ClientError, BotoCoreError) as exc:
            msg = f"Failed to update secret {secret_id}: {exc}"
            raise SecretStoreError(msg) from exc

    async def get_secret_blob(self, secret_id: str, region: str) -> dict[str, str]:
        return await asyncio.to_thread(self._get_sync, secret_id, region)

    async def upsert_secret_blob(self, secret_id: str, region: str, values: dict[str, str]) -> None:
        await asyncio.to_thread(self._upsert_sync, secret_id, region, values)
