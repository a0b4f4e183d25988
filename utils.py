# utils.py

"""
Shared plumbing for the OSLO search sync: configuration, the OpenSearch client,
the liveness probe, the well-known collections and the record model.
"""

import logging
import os
from typing import Dict, NamedTuple, Optional

from opensearchpy import OpenSearch
from opensearchpy.exceptions import OpenSearchException
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PING_TIMEOUT_SECONDS = 30


class Collection(NamedTuple):
    index: str
    kind: str


TERMINOLOGY = Collection("oslo-terminology", "vocabularies")
APPLICATION_PROFILES = Collection("oslo-application-profiles", "classes")

# Short names used by the CLI and the HTTP routes
COLLECTIONS: Dict[str, Collection] = {
    "terminology": TERMINOLOGY,
    "application-profiles": APPLICATION_PROFILES,
}

# Fields an update may touch; engine-internal fields never go in here
UPDATABLE_FIELDS = ("prefLabel", "URI", "definition", "context")

KIND_FIELD = "record_kind"

INDEX_BODY = {
    "mappings": {
        "properties": {
            "URI": {"type": "text", "fields": {"raw": {"type": "keyword"}}},
            "prefLabel": {"type": "text"},
            "definition": {"type": "text"},
            "context": {"type": "text"},
            KIND_FIELD: {"type": "keyword"},
        }
    }
}


# -------- Configuration --------
class SearchConfig(BaseSettings):
    """Read from `OPENSEARCH_*`; see `load_config` for the per-mode variants."""

    model_config = SettingsConfigDict(
        env_prefix="OPENSEARCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    endpoint: str = "https://localhost:9200"
    username: str = "admin"
    password: str = ""
    verify_certs: bool = False
    lookup_size: int = Field(10, ge=1)
    lookup_concurrency: int = Field(1, ge=1)
    refresh: Optional[str] = "wait_for"

    @field_validator("refresh", mode="before")
    @classmethod
    def _blank_refresh(cls, v):
        if isinstance(v, str) and v.strip().lower() in {"", "none", "false"}:
            return None
        return v


def load_config(env_mode: Optional[str] = None) -> SearchConfig:
    """`OPENSEARCH_PRD_ENDPOINT` wins over `OPENSEARCH_ENDPOINT` when running in PRD."""
    env_mode = (env_mode or os.getenv("ENV_MODE") or "DEV").upper()
    base = SearchConfig()
    scoped = SearchConfig(_env_prefix=f"OPENSEARCH_{env_mode}_")
    return base.model_copy(update={k: getattr(scoped, k) for k in scoped.model_fields_set})


# -------- Connection --------
def connect(config: SearchConfig) -> OpenSearch:
    """Build a client handle. Does not talk to the cluster; see `check_health`."""
    return OpenSearch(
        hosts=[config.endpoint],
        http_auth=(config.username, config.password),
        use_ssl=config.endpoint.startswith("https"),
        verify_certs=config.verify_certs,
        ssl_assert_hostname=config.verify_certs,
        ssl_show_warn=config.verify_certs,
    )


class HealthStatus(NamedTuple):
    ok: bool
    detail: str


def check_health(client: OpenSearch, timeout: int = PING_TIMEOUT_SECONDS) -> HealthStatus:
    try:
        alive = client.ping(request_timeout=timeout)
        detail = "cluster is running" if alive else "cluster did not answer ping"
    except OpenSearchException as e:
        alive = False
        detail = f"{e.__class__.__name__}: {e}"

    if alive:
        logging.info("OpenSearch %s", detail)
    else:
        logging.error("[FATAL] OpenSearch cluster is down: %s", detail)
    return HealthStatus(bool(alive), detail)


# -------- Records --------
class Term(BaseModel):
    """One terminology / application-profile record, keyed by URI."""

    # the URI is the key and is kept byte-for-byte; only the text fields are trimmed
    uri: str = Field(alias="URI", min_length=1)
    pref_label: Optional[str] = Field(None, alias="prefLabel")
    definition: Optional[str] = None
    context: Optional[str] = None

    model_config = {"extra": "allow", "populate_by_name": True}

    @field_validator("uri")
    @classmethod
    def _not_blank(cls, v):
        if not v.strip():
            raise ValueError("URI must not be blank")
        return v

    @field_validator("pref_label", "definition", "context", mode="before")
    @classmethod
    def _strip(cls, v):
        if v is None:
            return None
        return str(v).strip()


def term_to_document(term: Term, kind: str) -> dict:
    """Full payload for a new document, extra source fields included."""
    # `_id`, `_index` etc. are metadata fields and rejected inside a source
    doc = {k: v for k, v in term.model_dump(by_alias=True, exclude_none=True).items() if not k.startswith("_")}
    doc[KIND_FIELD] = kind
    return doc


def term_to_update(term: Term) -> dict:
    """Partial doc: fields the record does not carry are left as stored."""
    src = term.model_dump(by_alias=True)
    return {"doc": {k: src[k] for k in UPDATABLE_FIELDS if k == "URI" or src[k] is not None}}
