import pytest
from opensearchpy.exceptions import ConnectionError as OSConnectionError
from pydantic import ValidationError

import utils
from conftest import make_client, term


class TestLoadConfig:

    def test_defaults(self, monkeypatch):
        for var in ("OPENSEARCH_ENDPOINT", "OPENSEARCH_VERIFY_CERTS", "OPENSEARCH_REFRESH", "ENV_MODE"):
            monkeypatch.delenv(var, raising=False)

        config = utils.load_config()

        assert config.endpoint == "https://localhost:9200"
        assert config.verify_certs is False
        assert config.refresh == "wait_for"
        assert config.lookup_concurrency == 1

    def test_env_mode_override_wins(self, monkeypatch):
        monkeypatch.setenv("OPENSEARCH_ENDPOINT", "https://dev:9200")
        monkeypatch.setenv("OPENSEARCH_PRD_ENDPOINT", "https://prd:9200")
        monkeypatch.setenv("OPENSEARCH_LOOKUP_CONCURRENCY", "4")
        monkeypatch.setenv("OPENSEARCH_VERIFY_CERTS", "true")

        assert utils.load_config("DEV").endpoint == "https://dev:9200"
        prd = utils.load_config("prd")
        assert prd.endpoint == "https://prd:9200"
        assert prd.lookup_concurrency == 4
        assert prd.verify_certs is True

    def test_scoped_variables_only_apply_to_their_mode(self, monkeypatch):
        monkeypatch.delenv("OPENSEARCH_ENDPOINT", raising=False)
        monkeypatch.delenv("OPENSEARCH_USERNAME", raising=False)
        monkeypatch.setenv("OPENSEARCH_PRD_ENDPOINT", "https://prd:9200")
        monkeypatch.setenv("OPENSEARCH_DEV_USERNAME", "dev-bot")

        dev = utils.load_config("DEV")
        assert dev.endpoint == "https://localhost:9200"
        assert dev.username == "dev-bot"
        assert utils.load_config("PRD").username == "admin"

    def test_refresh_can_be_disabled(self, monkeypatch):
        monkeypatch.setenv("OPENSEARCH_REFRESH", "none")

        assert utils.load_config().refresh is None

    def test_rejects_zero_concurrency(self, monkeypatch):
        monkeypatch.setenv("OPENSEARCH_LOOKUP_CONCURRENCY", "0")

        with pytest.raises(ValidationError):
            utils.load_config()


class TestConnect:

    def test_builds_client_from_config(self, monkeypatch):
        captured = {}
        monkeypatch.setattr(utils, "OpenSearch", lambda **kw: captured.update(kw) or "client")
        config = utils.SearchConfig(endpoint="https://search:9200", username="u", password="p")

        assert utils.connect(config) == "client"
        assert captured["hosts"] == ["https://search:9200"]
        assert captured["http_auth"] == ("u", "p")
        assert captured["use_ssl"] is True
        assert captured["verify_certs"] is False

    def test_plain_http(self, monkeypatch):
        captured = {}
        monkeypatch.setattr(utils, "OpenSearch", lambda **kw: captured.update(kw))

        utils.connect(utils.SearchConfig(endpoint="http://search:9200"))

        assert captured["use_ssl"] is False


class TestCheckHealth:

    def test_alive(self):
        client = make_client()

        status = utils.check_health(client)

        assert status.ok
        client.ping.assert_called_once_with(request_timeout=30)

    def test_down_is_reported_not_fatal(self, caplog):
        client = make_client()
        client.ping.return_value = False

        status = utils.check_health(client, timeout=5)

        assert not status.ok
        assert "[FATAL]" in caplog.text

    def test_transport_error(self):
        client = make_client()
        client.ping.side_effect = OSConnectionError("N/A", "refused", None)

        status = utils.check_health(client)

        assert not status.ok
        assert status.detail.startswith("ConnectionError")


class TestTerm:

    def test_strips_text_fields_but_not_the_uri(self):
        t = utils.Term.model_validate({"URI": "  http://a ", "prefLabel": " A\n", "context": None})

        assert t.uri == "  http://a "
        assert t.pref_label == "A"
        assert t.context is None

    def test_empty_uri_rejected(self):
        with pytest.raises(ValidationError):
            utils.Term.model_validate({"URI": "   ", "prefLabel": "x"})

    def test_document_mapping(self):
        t = term("http://a", "A", source="oslo")

        doc = utils.term_to_document(t, "vocabularies")
        update = utils.term_to_update(t)

        assert doc["record_kind"] == "vocabularies"
        assert doc["source"] == "oslo"
        assert update == {"doc": {
            "prefLabel": "A",
            "URI": "http://a",
            "definition": "definition of http://a",
            "context": "OSLO",
        }}

    def test_update_leaves_missing_fields_alone(self):
        t = utils.Term.model_validate({"URI": "http://a", "prefLabel": "New", "context": None})

        assert utils.term_to_update(t) == {"doc": {"prefLabel": "New", "URI": "http://a"}}
        assert utils.term_to_document(t, "classes") == {
            "URI": "http://a",
            "prefLabel": "New",
            "record_kind": "classes",
        }
