"""
Tests for the maintenance scripts shipped next to the service
(encrypt_cluster_credentials.py, check_kubeconfig.py).
"""

import os
import subprocess
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import yaml

from check_kubeconfig import export_context, list_contexts
from devpocket.services.connection import ClusterConnectionManager
from devpocket.services.kubeconfig import KubeconfigParser
from encrypt_cluster_credentials import migrate_credentials


class TestMigrateCredentials:

    @pytest.mark.asyncio
    async def test_rewrites_legacy_and_plaintext(
        self, datastore, encryption_service, sample_kubeconfig, seed, make_cluster, capsys
    ):
        await seed(
            make_cluster(id="c-current", name="current"),
            make_cluster(id="c-legacy", name="legacy", kubeconfig=encryption_service.encrypt_legacy(sample_kubeconfig)),
            make_cluster(id="c-plain", name="plain", kubeconfig=sample_kubeconfig),
            make_cluster(id="c-broken", name="broken", kubeconfig="not a kubeconfig"),
        )
        current_before = (await datastore.get_cluster("c-current")).kubeconfig
        manager = ClusterConnectionManager(datastore, encryption_service)
        manager.invalidate = MagicMock()

        summary = await migrate_credentials(datastore, encryption_service, manager)

        assert summary == {"current": 1, "legacy": 1, "plaintext": 1, "unreadable": 1}
        for cluster_id in ("c-legacy", "c-plain"):
            stored = (await datastore.get_cluster(cluster_id)).kubeconfig
            assert stored.count(":") == 2
            assert encryption_service.decrypt(stored) == sample_kubeconfig
        assert (await datastore.get_cluster("c-current")).kubeconfig == current_before
        assert (await datastore.get_cluster("c-broken")).kubeconfig == "not a kubeconfig"
        assert sorted(c.args[0] for c in manager.invalidate.call_args_list) == ["c-legacy", "c-plain"]
        assert "broken (c-broken)" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(
        self, datastore, encryption_service, sample_kubeconfig, seed, make_cluster
    ):
        await seed(make_cluster(id="c-plain", name="plain", kubeconfig=sample_kubeconfig))

        summary = await migrate_credentials(datastore, encryption_service, dry_run=True)

        assert summary["plaintext"] == 1
        assert (await datastore.get_cluster("c-plain")).kubeconfig == sample_kubeconfig


class TestCheckKubeconfig:

    @pytest.fixture
    def kubeconfig_file(self, tmp_path, sample_kubeconfig):
        path = tmp_path / "config"
        path.write_text(sample_kubeconfig, encoding="utf-8")
        return str(path)

    def test_list_contexts(self, kubeconfig_file, capsys):
        assert list_contexts(KubeconfigParser(), kubeconfig_file) == 0

        out = capsys.readouterr().out
        assert "* ovh-prod" in out
        assert "Region:    us-west-2" in out
        assert "ovh-token" not in out

    def test_list_contexts_empty(self, tmp_path):
        path = tmp_path / "config"
        path.write_text("apiVersion: v1\nkind: Config\n", encoding="utf-8")

        assert list_contexts(KubeconfigParser(), str(path)) == 1

    def test_export_context(self, kubeconfig_file, capsys):
        assert export_context(KubeconfigParser(), kubeconfig_file, "eks-dev") == 0

        document = yaml.safe_load(capsys.readouterr().out)
        assert [c["name"] for c in document["contexts"]] == ["eks-dev"]

    def test_cli_runs_without_database_url(self, kubeconfig_file, tmp_path):
        script = Path(__file__).parent.parent / "check_kubeconfig.py"
        env = {key: value for key, value in os.environ.items() if key != "DATABASE_URL"}

        result = subprocess.run(
            [sys.executable, str(script), kubeconfig_file],
            env=env,
            cwd=tmp_path,
            capture_output=True,
            text=True,
            timeout=60,
        )

        assert result.returncode == 0, result.stderr
        assert "* ovh-prod" in result.stdout
        assert "ValidationError" not in result.stderr
