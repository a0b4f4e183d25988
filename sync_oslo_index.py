# sync_oslo_index.py

"""
sync_oslo_index.py — keep the OSLO terminology / application-profile indices in sync.

What it does
- Makes sure `oslo-terminology` and `oslo-application-profiles` exist (created empty, with a small mapping).
- For each incoming record, looks up an existing document by `URI` (`match` query, then an exact-equality
  post-filter on `_source.URI`, since `match` also returns near hits).
- Builds one bulk request: `index` + full payload for unseen URIs, `update` + `{"doc": ...}` for known ones.

Two entry points
- **Full sync** (`reconcile`, `update_vocabulary`, `update_application_profile`): insert-or-update, one directive
  pair per record, in input order.
- **Plain push** (`push`): bootstraps the index, then inserts only URIs not yet indexed. Existing records are
  skipped, not updated.

Nothing here raises on engine-side write failures; callers get a `BatchResult` and decide.
"""

import argparse
import json
import logging
import sys
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from opensearchpy import OpenSearch
from opensearchpy.exceptions import OpenSearchException
from pydantic import BaseModel, ValidationError

from utils import (
    APPLICATION_PROFILES,
    COLLECTIONS,
    INDEX_BODY,
    KIND_FIELD,
    TERMINOLOGY,
    Collection,
    Term,
    check_health,
    connect,
    load_config,
    term_to_document,
    term_to_update,
)


class EngineError(Exception):
    """A write the engine refused: index creation or (part of) a bulk request."""

    def __init__(self, operation: str, target: str, reason: str):
        super().__init__(f"{operation} on {target} failed: {reason}")
        self.operation = operation
        self.target = target
        self.reason = reason


# -------- Results --------
class EnsureResult(BaseModel):
    collection: str
    created: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_errors(self) -> None:
        if self.error:
            raise EngineError("create", self.collection, self.error)


class BulkFailure(BaseModel):
    directive_index: int
    reason: str


class BatchResult(BaseModel):
    collection: str
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    succeeded: int = 0
    failed: List[BulkFailure] = []
    error: Optional[str] = None

    @property
    def submitted(self) -> int:
        return self.inserted + self.updated

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failed

    def raise_for_errors(self) -> None:
        if self.error:
            raise EngineError("bulk", self.collection, self.error)
        if self.failed:
            first = self.failed[0]
            raise EngineError(
                "bulk",
                self.collection,
                f"{len(self.failed)} of {self.submitted} item(s) failed; "
                f"first at directive {first.directive_index}: {first.reason}",
            )


# -------- Index bootstrap --------
def ensure_collection(client: OpenSearch, name: str) -> EnsureResult:
    if client.indices.exists(index=name):
        return EnsureResult(collection=name)

    logging.info("%s does not exist yet. Creating it.", name)
    try:
        client.indices.create(index=name, body=INDEX_BODY)
    except OpenSearchException as e:
        logging.error("Could not create index %s: %s", name, e)
        return EnsureResult(collection=name, error=f"{e.__class__.__name__}: {e}")

    logging.info("Created a new index: %s", name)
    return EnsureResult(collection=name, created=True)


def setup(client: OpenSearch) -> Dict[str, EnsureResult]:
    """One-time startup step: both well-known indices exist afterwards (or the failure is reported)."""
    return {c.index: ensure_collection(client, c.index) for c in (TERMINOLOGY, APPLICATION_PROFILES)}


# -------- Key resolution --------
def resolve_id(client: OpenSearch, uri: str, collection: str, kind: str, size: int = 10) -> Optional[str]:
    resp = client.search(
        index=collection,
        body={
            "size": size,
            "_source": ["URI"],
            "query": {
                "bool": {
                    "must": [{"match": {"URI": uri}}],
                    # exact keyword hit outranks analysed near matches within `size`
                    "should": [{"term": {"URI.raw": {"value": uri, "boost": 10}}}],
                    "filter": [{"term": {KIND_FIELD: kind}}],
                }
            },
        },
    )
    for hit in resp.get("hits", {}).get("hits", []):
        if hit.get("_source", {}).get("URI") == uri:
            return hit.get("_id")
    return None


def resolve_ids(
    client: OpenSearch,
    uris: Sequence[str],
    collection: str,
    kind: str,
    max_workers: int = 1,
    size: int = 10,
) -> List[Optional[str]]:
    """
    Resolve every URI; result[i] belongs to uris[i].
    With max_workers > 1 the lookups run in a bounded thread pool; `map` keeps input order.
    """
    if max_workers <= 1 or len(uris) <= 1:
        return [resolve_id(client, u, collection, kind, size) for u in uris]

    with ThreadPoolExecutor(max_workers=min(max_workers, len(uris))) as pool:
        return list(pool.map(lambda u: resolve_id(client, u, collection, kind, size), uris))


# -------- Directives --------
def build_directives(
    terms: Sequence[Term],
    ids: Sequence[Optional[str]],
    collection: str,
    kind: str,
    skip_existing: bool = False,
) -> Tuple[List[dict], int, int, int]:
    """
    Returns (operations, inserted, updated, skipped). `operations` is the flat bulk body:
    action line followed by its payload, one pair per written record, in input order.
    """
    operations: List[dict] = []
    inserted = updated = skipped = 0

    for term, doc_id in zip(terms, ids):
        if doc_id is None:
            operations.append({"index": {"_index": collection}})
            operations.append(term_to_document(term, kind))
            inserted += 1
        elif skip_existing:
            skipped += 1
        else:
            operations.append({"update": {"_index": collection, "_id": doc_id}})
            operations.append(term_to_update(term))
            updated += 1

    return operations, inserted, updated, skipped


def _item_reason(info: dict) -> str:
    err = info.get("error")
    if isinstance(err, dict):
        return f"{err.get('type', 'error')}: {err.get('reason', '')}".strip()
    if err:
        return str(err)
    return f"status {info.get('status')}"


def submit_bulk(
    client: OpenSearch, operations: List[dict], refresh: Optional[str] = "wait_for"
) -> Tuple[int, List[BulkFailure], Optional[str]]:
    """Send one bulk request. Returns (succeeded, per-directive failures, request-level error)."""
    params = {"refresh": refresh} if refresh else {}
    try:
        resp = client.bulk(body=operations, **params)
    except OpenSearchException as e:
        logging.error("Failed bulk operation: %s", e)
        return 0, [], f"{e.__class__.__name__}: {e}"

    succeeded = 0
    failures: List[BulkFailure] = []
    for i, item in enumerate(resp.get("items", [])):
        # each item is {"index": {...}} or {"update": {...}}
        info = next(iter(item.values()), {})
        status = int(info.get("status", 500))
        if info.get("error") or status >= 300:
            failures.append(BulkFailure(directive_index=i, reason=_item_reason(info)))
        else:
            succeeded += 1

    if failures:
        logging.warning("Bulk operation had %d failed item(s) out of %d", len(failures), len(failures) + succeeded)
    return succeeded, failures, None


def _warn_duplicates(terms: Iterable[Term], collection: str) -> None:
    dupes = [u for u, n in Counter(t.uri for t in terms).items() if n > 1]
    if dupes:
        logging.warning("%d URI(s) occur more than once in the batch for %s: %s", len(dupes), collection, dupes[:5])


def _sync(
    client: OpenSearch,
    terms: Sequence[Term],
    collection: str,
    kind: str,
    skip_existing: bool,
    max_workers: int,
    refresh: Optional[str],
    size: int,
) -> BatchResult:
    result = BatchResult(collection=collection)
    if not terms:
        logging.info("Empty batch for %s; nothing to do.", collection)
        return result

    _warn_duplicates(terms, collection)
    ids = resolve_ids(client, [t.uri for t in terms], collection, kind, max_workers=max_workers, size=size)
    operations, result.inserted, result.updated, result.skipped = build_directives(
        terms, ids, collection, kind, skip_existing=skip_existing
    )

    logging.info(
        "Plan for %s → insert=%d, update=%d, skip=%d",
        collection, result.inserted, result.updated, result.skipped,
    )
    if not operations:
        return result

    result.succeeded, result.failed, result.error = submit_bulk(client, operations, refresh=refresh)
    if result.ok:
        logging.info("Bulk operation on %s succeeded (%d item(s))", collection, result.succeeded)
    return result


# -------- Entry points --------
def reconcile(
    client: OpenSearch,
    terms: Sequence[Term],
    collection: str,
    kind: str,
    max_workers: int = 1,
    refresh: Optional[str] = "wait_for",
    size: int = 10,
) -> BatchResult:
    """Full sync: insert unseen URIs, update the mutable fields of known ones."""
    return _sync(client, terms, collection, kind, False, max_workers, refresh, size)


def push(
    client: OpenSearch,
    terms: Sequence[Term],
    collection: str,
    kind: str,
    max_workers: int = 1,
    refresh: Optional[str] = "wait_for",
    size: int = 10,
) -> BatchResult:
    """
    Plain push for one-off imports: creates the index if needed and inserts only new URIs.
    Records whose URI is already indexed are left untouched (counted in `skipped`).
    """
    ensured = ensure_collection(client, collection)
    if not ensured.ok:
        logging.warning("Pushing to %s although it could not be created", collection)
    return _sync(client, terms, collection, kind, True, max_workers, refresh, size)


def update_vocabulary(client: OpenSearch, terms: Sequence[Term], **kwargs) -> BatchResult:
    return reconcile(client, terms, TERMINOLOGY.index, TERMINOLOGY.kind, **kwargs)


def update_application_profile(client: OpenSearch, terms: Sequence[Term], **kwargs) -> BatchResult:
    return reconcile(client, terms, APPLICATION_PROFILES.index, APPLICATION_PROFILES.kind, **kwargs)


# -------- File input / CLI --------
def load_terms(path: str) -> List[Term]:
    """Read a JSON array of records. Invalid entries are logged and skipped."""
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)

    if isinstance(raw, dict):
        raw = raw.get("terms", [])
    if not isinstance(raw, list):
        raise ValueError(f"{path}: expected a JSON array of records")

    terms: List[Term] = []
    for i, item in enumerate(raw):
        try:
            terms.append(Term.model_validate(item))
        except ValidationError as e:
            logging.warning("Skipping record #%d in %s: %s", i, path, e.errors()[0].get("msg"))
    return terms


def run_sync(
    client: OpenSearch,
    terms: Sequence[Term],
    target: Collection,
    mode: str = "sync",
    max_workers: int = 1,
    refresh: Optional[str] = "wait_for",
    size: int = 10,
) -> BatchResult:
    if mode == "push":
        return push(client, terms, target.index, target.kind, max_workers, refresh, size)
    if mode == "sync":
        return reconcile(client, terms, target.index, target.kind, max_workers, refresh, size)
    raise ValueError(f"Unknown mode {mode!r}. Use sync or push")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Sync OSLO records into OpenSearch.")
    parser.add_argument("file", type=Path, help="JSON array of records")
    parser.add_argument("--collection", choices=sorted(COLLECTIONS), default="terminology")
    parser.add_argument("--mode", choices=["sync", "push"], default="sync")
    parser.add_argument("--env-mode", choices=["DEV", "PRD"], default=None)
    args = parser.parse_args(argv)

    config = load_config(args.env_mode)
    client = connect(config)
    if not check_health(client).ok:
        return 1

    setup(client)
    terms = load_terms(str(args.file))
    logging.info("Loaded %d record(s) from %s", len(terms), args.file)

    result = run_sync(
        client,
        terms,
        COLLECTIONS[args.collection],
        mode=args.mode,
        max_workers=config.lookup_concurrency,
        refresh=config.refresh,
        size=config.lookup_size,
    )
    print(json.dumps(result.model_dump(), indent=2))
    return 0 if result.ok else 2


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    sys.exit(main())
