from unittest.mock import MagicMock

import pytest

from utils import Term


def hit(doc_id, uri):
    return {"_id": doc_id, "_source": {"URI": uri}}


def make_client(hits_by_uri=None, bulk_items=None, index_exists=True):
    """
    MagicMock standing in for an OpenSearch client.
    `search` answers from hits_by_uri keyed on the queried URI; `bulk` echoes a 2xx item per pair
    unless bulk_items is given.
    """
    hits_by_uri = hits_by_uri or {}
    client = MagicMock()
    client.ping.return_value = True
    client.indices.exists.return_value = index_exists

    def _search(index, body):
        uri = body["query"]["bool"]["must"][0]["match"]["URI"]
        return {"hits": {"hits": hits_by_uri.get(uri, [])}}

    def _bulk(body, **kwargs):
        if bulk_items is not None:
            return {"errors": True, "items": bulk_items}
        items = [{next(iter(action)): {"status": 201}} for action in body[::2]]
        return {"errors": False, "items": items}

    client.search.side_effect = _search
    client.bulk.side_effect = _bulk
    return client


def term(uri, label=None, **extra):
    return Term.model_validate({
        "URI": uri,
        "prefLabel": label or uri.rsplit("#", 1)[-1],
        "definition": f"definition of {uri}",
        "context": "OSLO",
        **extra,
    })


@pytest.fixture
def client():
    return make_client()
