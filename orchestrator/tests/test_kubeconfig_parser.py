"""
Tests for kubeconfig parsing, inference and connectivity checks.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import yaml
from kubernetes.client.rest import ApiException

from devpocket.errors import FormatError
from devpocket.services.kubeconfig import KubeconfigParser

pytestmark = pytest.mark.unit


@pytest.fixture
def parser():
    return KubeconfigParser(default_region="eu-west-1", default_provider="kubernetes")


class TestParseContent:

    def test_parses_every_resolvable_context(self, parser, sample_kubeconfig):
        contexts = parser.parse_content(sample_kubeconfig)

        assert [c.name for c in contexts] == ["ovh-prod", "eks-dev"]

        ovh, eks = contexts
        assert ovh.is_current_context is True
        assert ovh.namespace == "apps"
        assert ovh.provider == "ovh"
        assert ovh.region == "eu-west-1"
        assert ovh.token == "ovh-token"
        assert ovh.insecure_skip_tls_verify is True

        assert eks.is_current_context is False
        assert eks.namespace == "default"
        assert eks.provider == "aws"
        assert eks.region == "us-west-2"
        assert eks.certificate_authority == "Y2VydGlmaWNhdGU="
        assert eks.client_key == "Y2xpZW50LWtleQ=="

    def test_each_record_carries_the_full_document(self, parser, sample_kubeconfig):
        for context in parser.parse_content(sample_kubeconfig):
            assert context.kubeconfig == sample_kubeconfig

    def test_credentials_are_not_in_repr(self, parser, sample_kubeconfig):
        ovh = parser.parse_content(sample_kubeconfig)[0]

        assert "ovh-token" not in repr(ovh)

    def test_dangling_user_reference_is_skipped(self, parser, sample_kubeconfig):
        data = yaml.safe_load(sample_kubeconfig)
        data["contexts"][1]["context"]["user"] = "nobody"

        contexts = parser.parse_content(yaml.safe_dump(data))

        assert [c.name for c in contexts] == ["ovh-prod"]

    def test_dangling_cluster_reference_is_skipped(self, parser, sample_kubeconfig):
        data = yaml.safe_load(sample_kubeconfig)
        data["contexts"][0]["context"]["cluster"] = "missing"

        contexts = parser.parse_content(yaml.safe_dump(data))

        assert [c.name for c in contexts] == ["eks-dev"]

    def test_wrong_kind_raises(self, parser, sample_kubeconfig):
        with pytest.raises(FormatError, match="kind"):
            parser.parse_content(sample_kubeconfig.replace("kind: Config", "kind: Pod"))

    @pytest.mark.parametrize("document", ["", "just a string", "key: [unclosed", "- a\n- b\n"])
    def test_invalid_documents_raise(self, parser, document):
        with pytest.raises(FormatError):
            parser.parse_content(document)

    def test_no_contexts(self, parser):
        assert parser.parse_content("apiVersion: v1\nkind: Config\nclusters: []\n") == []

    def test_parse_file(self, parser, sample_kubeconfig, tmp_path):
        path = tmp_path / "config"
        path.write_text(sample_kubeconfig, encoding="utf-8")

        assert len(parser.parse_file(str(path))) == 2

    def test_parse_missing_file(self, parser, tmp_path):
        with pytest.raises(FormatError, match="not found"):
            parser.parse_file(str(tmp_path / "missing"))


class TestExtractRegion:

    @pytest.mark.parametrize("server,region", [
        ("https://51.79.10.20:6443", "eu-west-1"),
        ("https://51.178.1.2:6443", "eu-central-1"),
        ("https://54.12.0.1", "us-east-1"),
        ("https://3.120.0.1", "us-east-1"),
        ("https://35.200.0.1", "us-central1"),
        ("https://34.1.2.3", "us-central1"),
        ("https://abc.gr7.us-west-2.eks.amazonaws.com", "us-west-2"),
        ("https://xyz.gra7.k8s.ovh.net", "gra7"),
        ("https://cluster.eu-west.example.com", "eu-west"),
    ])
    def test_known_patterns(self, parser, server, region):
        assert parser.extract_region(server) == region

    @pytest.mark.parametrize("server", [
        "https://10.0.0.1:6443",
        "https://kubernetes.default.svc",
        "https://localhost:6443",
        "not a url",
        "",
    ])
    def test_unrecognized_host_uses_default(self, parser, server):
        assert parser.extract_region(server) == "eu-west-1"

    def test_configured_default(self):
        assert KubeconfigParser(default_region="ap-south-1").extract_region("https://10.0.0.1") == "ap-south-1"


class TestExtractProvider:

    @pytest.mark.parametrize("name,server,provider", [
        ("ovh-cluster", "https://10.0.0.1", "ovh"),
        ("prod", "https://abc.c1.gra7.k8s.ovh.net", "ovh"),
        ("eks-cluster", "https://10.0.0.1", "aws"),
        ("prod", "https://abc.gr7.us-east-1.eks.amazonaws.com", "aws"),
        ("gke_project_zone_cluster", "https://10.0.0.1", "gcp"),
        ("my-aks-cluster", "https://10.0.0.1", "azure"),
        ("do-fra1-k8s", "https://10.0.0.1", "digitalocean"),
        ("prod", "https://abc.k8s.ondigitalocean.com", "digitalocean"),
        ("lke12345", "https://abc.linodelke.net", "linode"),
        ("docker-desktop", "https://kubernetes.docker.internal:6443", "kubernetes"),
        ("minikube", "https://192.168.49.2:8443", "kubernetes"),
    ])
    def test_provider(self, parser, name, server, provider):
        assert parser.extract_provider(name, server) == provider


class TestCreateContextKubeconfig:

    def test_minimal_document(self, parser, sample_kubeconfig):
        document = yaml.safe_load(parser.create_context_kubeconfig(sample_kubeconfig, "eks-dev"))

        assert document["kind"] == "Config"
        assert document["current-context"] == "eks-dev"
        assert [c["name"] for c in document["contexts"]] == ["eks-dev"]
        assert [c["name"] for c in document["clusters"]] == ["eks-cluster"]
        assert [u["name"] for u in document["users"]] == ["eks-user"]

    def test_minimal_document_parses(self, parser, sample_kubeconfig):
        minimal = parser.create_context_kubeconfig(sample_kubeconfig, "ovh-prod")

        contexts = parser.parse_content(minimal)

        assert len(contexts) == 1
        assert contexts[0].is_current_context is True

    def test_unknown_context(self, parser, sample_kubeconfig):
        with pytest.raises(FormatError, match="not found"):
            parser.create_context_kubeconfig(sample_kubeconfig, "nope")

    def test_incomplete_context(self, parser, sample_kubeconfig):
        broken = sample_kubeconfig.replace("user: eks-user", "user: ghost")

        with pytest.raises(FormatError, match="Incomplete"):
            parser.create_context_kubeconfig(broken, "eks-dev")


def _client(namespaces=3, nodes=2, node_error=None, namespace_error=None):
    cluster_client = MagicMock()
    if namespace_error:
        cluster_client.core_v1.list_namespace.side_effect = namespace_error
    else:
        cluster_client.core_v1.list_namespace.return_value = SimpleNamespace(items=[object()] * namespaces)
    if node_error:
        cluster_client.core_v1.list_node.side_effect = node_error
    else:
        cluster_client.core_v1.list_node.return_value = SimpleNamespace(items=[object()] * nodes)
    return cluster_client


class TestValidateConnectivity:

    @pytest.mark.asyncio
    async def test_all_contexts_connected(self, sample_kubeconfig):
        clients = {"ovh-prod": _client(nodes=3), "eks-dev": _client(nodes=5, namespaces=7)}
        parser = KubeconfigParser(client_factory=lambda document, context: clients[context])

        report = await parser.validate_connectivity(sample_kubeconfig)

        assert report.valid is True
        assert [(c.name, c.node_count) for c in report.contexts] == [("ovh-prod", 3), ("eks-dev", 5)]
        assert report.contexts[1].namespace_count == 7
        for cluster_client in clients.values():
            cluster_client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_node_listing_failure_keeps_context_connected(self, sample_kubeconfig):
        forbidden = ApiException(status=403, reason="Forbidden")
        clients = {"ovh-prod": _client(node_error=forbidden), "eks-dev": _client()}
        parser = KubeconfigParser(
            unknown_node_count=1,
            client_factory=lambda document, context: clients[context],
        )

        report = await parser.validate_connectivity(sample_kubeconfig)

        assert report.valid is True
        assert report.contexts[0].connected is True
        assert report.contexts[0].node_count == 1

    @pytest.mark.asyncio
    async def test_namespace_failure_disconnects_context(self, sample_kubeconfig):
        clients = {
            "ovh-prod": _client(namespace_error=ConnectionError("connection refused")),
            "eks-dev": _client(),
        }
        parser = KubeconfigParser(client_factory=lambda document, context: clients[context])

        report = await parser.validate_connectivity(sample_kubeconfig)

        assert report.valid is False
        assert report.contexts[0].status == "disconnected"
        assert "connection refused" in report.contexts[0].error
        assert report.contexts[1].connected is True
        clients["ovh-prod"].close.assert_called_once()

    @pytest.mark.asyncio
    async def test_client_construction_failure(self, sample_kubeconfig):
        def factory(document, context):
            raise FormatError("bad credentials block")

        report = await KubeconfigParser(client_factory=factory).validate_connectivity(sample_kubeconfig)

        assert report.valid is False
        assert all(not c.connected for c in report.contexts)

    @pytest.mark.asyncio
    async def test_unparseable_document(self):
        report = await KubeconfigParser().validate_connectivity("key: [unclosed")

        assert report.valid is False
        assert report.contexts[0].name == "unknown"

    @pytest.mark.asyncio
    async def test_no_contexts_is_not_valid(self):
        report = await KubeconfigParser().validate_connectivity("apiVersion: v1\nkind: Config\n")

        assert report.valid is False
        assert report.contexts == []
