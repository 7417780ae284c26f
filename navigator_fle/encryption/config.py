"""
FLE Configuration — local master key loading and validated auto-encryption settings.

Reads settings from environment variables:
    FLE_KEY_VAULT_NAMESPACE = <database.collection>  (default "keyvault.datakeys")
    FLE_LOCAL_MASTER_KEY = <base64-encoded 96-byte key>
    FLE_SCHEMA_MAP_FILE = <path to an extended JSON {namespace: schema} file>
    FLE_KEY_CACHE_TTL = <seconds>  (default 60, 0 disables expiry)

Security Note:
    Never log key material. Only log provider names and key ids.
"""
import os
import base64
import secrets
import logging
from pathlib import Path
from typing import Any, Optional, Union

import orjson
from bson import json_util
from pydantic import BaseModel, Field, field_validator, model_validator

from .crypto import KEY_LENGTH

logger = logging.getLogger("navigator.fle")

DEFAULT_KEY_VAULT_NAMESPACE = "keyvault.datakeys"


def load_local_master_key(env_var: str = "FLE_LOCAL_MASTER_KEY") -> bytes:
    """Load the local KMS master key from the environment.

    The value must be base64-encoded and decode to exactly 96 bytes.

    Raises:
        RuntimeError: If the variable is not set.
        ValueError: If the key does not decode to exactly 96 bytes.
    """
    value = os.environ.get(env_var)
    if value is None:
        raise RuntimeError(
            f"No local master key found in environment. "
            f"Set {env_var}=<base64-encoded-{KEY_LENGTH}-byte-key>"
        )
    key_bytes = base64.b64decode(value)
    if len(key_bytes) != KEY_LENGTH:
        raise ValueError(
            f"{env_var} must decode to exactly {KEY_LENGTH} bytes, "
            f"got {len(key_bytes)}"
        )
    return key_bytes


def generate_local_master_key() -> str:
    """Generate a random 96-byte local master key and return it as base64.

    The result is suitable for the ``FLE_LOCAL_MASTER_KEY`` variable.
    """
    return base64.b64encode(secrets.token_bytes(KEY_LENGTH)).decode("ascii")


def _from_extended_json(value: Any) -> Any:
    # bottom-up, the way json.loads applies object_hook
    if isinstance(value, dict):
        return json_util.object_hook(
            {k: _from_extended_json(v) for k, v in value.items()}
        )
    if isinstance(value, list):
        return [_from_extended_json(v) for v in value]
    return value


def load_extended_json(source: Union[str, bytes, Path]) -> Any:
    """Parse MongoDB extended JSON (``$binary``, ``$date``...) into BSON types.

    Args:
        source: A JSON document as str/bytes, or a Path to a file.
    """
    if isinstance(source, Path):
        source = source.read_bytes()
    return _from_extended_json(orjson.loads(source))


class AutoEncryptionConfig(BaseModel):
    """Validated automatic encryption settings."""

    key_vault_namespace: str = Field(default=DEFAULT_KEY_VAULT_NAMESPACE)
    kms_providers: dict[str, dict[str, Any]]
    schema_map: dict[str, dict[str, Any]] = Field(default_factory=dict)
    bypass_auto_encryption: bool = False
    key_cache_ttl: float = Field(default=60.0, ge=0)
    kms_max_attempts: int = Field(default=3, ge=1, le=10)
    rewrap_batch_size: int = Field(default=100, ge=1, le=10000)

    model_config = {"arbitrary_types_allowed": True}

    @field_validator("key_vault_namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        """Key vault namespace must be 'database.collection'."""
        database, sep, collection = v.partition(".")
        if not sep or not database or not collection:
            raise ValueError(f"Invalid key vault namespace: {v!r}")
        return v

    @field_validator("kms_providers")
    @classmethod
    def validate_kms_providers(cls, v: dict) -> dict:
        """At least one provider; a local provider needs a 96-byte key."""
        if not v:
            raise ValueError("At least one KMS provider must be configured")
        local = v.get("local")
        if local is not None:
            key = local.get("key")
            if isinstance(key, str):
                key = base64.b64decode(key)
            if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
                raise ValueError(
                    f"Local KMS key must be {KEY_LENGTH} bytes"
                )
            v = {**v, "local": {**local, "key": bytes(key)}}
        return v

    @field_validator("schema_map")
    @classmethod
    def validate_schema_map(cls, v: dict) -> dict:
        for namespace in v:
            if "." not in namespace:
                raise ValueError(f"Invalid schema namespace: {namespace!r}")
        return v

    @model_validator(mode="after")
    def validate_vault_not_encrypted(self) -> "AutoEncryptionConfig":
        """The key vault itself can never be auto-encrypted."""
        if self.key_vault_namespace in self.schema_map:
            raise ValueError(
                f"Key vault namespace {self.key_vault_namespace} cannot "
                f"have an encryption schema"
            )
        return self

    @classmethod
    def from_env(cls, kms_providers: Optional[dict] = None) -> "AutoEncryptionConfig":
        """Create an AutoEncryptionConfig from environment variables.

        Args:
            kms_providers: Extra (remote) provider settings merged with the
                local provider loaded from ``FLE_LOCAL_MASTER_KEY``.
        """
        providers = dict(kms_providers or {})
        if "FLE_LOCAL_MASTER_KEY" in os.environ:
            providers["local"] = {"key": load_local_master_key()}
        schema_map = {}
        schema_file = os.environ.get("FLE_SCHEMA_MAP_FILE")
        if schema_file:
            schema_map = load_extended_json(Path(schema_file))
            logger.debug(
                "Loaded encryption schemas for %d namespace(s)", len(schema_map),
            )
        return cls(
            key_vault_namespace=os.environ.get(
                "FLE_KEY_VAULT_NAMESPACE", DEFAULT_KEY_VAULT_NAMESPACE,
            ),
            kms_providers=providers,
            schema_map=schema_map,
            key_cache_ttl=float(os.environ.get("FLE_KEY_CACHE_TTL", 60)),
        )
