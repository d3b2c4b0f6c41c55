"""Tests for the kgm command line."""

import json

import pytest
import yaml
from typer.testing import CliRunner

from kg_merge.cli import app
from kg_merge.extract.models import Transform
from kg_merge.graph.sqlite_store import SQLiteGraphStore

from conftest import ACME_CIK, ACME_ID, company

runner = CliRunner()


@pytest.fixture(autouse=True)
def project(tmp_path, monkeypatch):
    """An empty project directory as cwd."""
    monkeypatch.chdir(tmp_path)
    for var in ("KGM_OUTPUT_DIR", "KGM_DATABASE_PATH", "KGM_ONTOLOGY_PATH"):
        monkeypatch.delenv(var, raising=False)
    return tmp_path


def _write(project, transform: Transform) -> str:
    path = project / f"{transform.transform_id}.json"
    path.write_text(transform.model_dump_json())
    return str(path)


def _graph(project) -> SQLiteGraphStore:
    return SQLiteGraphStore(project / "output" / "graph.db")


class TestCheckAndMerge:
    """check, approve and merge end to end."""

    def test_check_then_merge(self, project, sample_transform):
        path = _write(project, sample_transform)

        result = runner.invoke(app, ["check", path])
        assert result.exit_code == 0, result.output
        assert "Transform approved" in result.output
        assert (project / "output" / "quality" / "t-new.yaml").exists()

        result = runner.invoke(app, ["merge", path, "--no-review"])
        assert result.exit_code == 0, result.output
        assert "Merge run completed" in result.output
        assert "New entities: 3" in result.output

        with _graph(project) as store:
            assert store.get_entity("company:0000000001").version == 1
            assert len(store.all_relationships()) == 2

    def test_merge_needs_approval(self, project):
        transform = Transform(transform_id="t-bad", entities=[company("c1", "123", "Globex Corporation")])
        path = _write(project, transform)

        result = runner.invoke(app, ["check", path])
        assert result.exit_code == 0
        assert "approve" in result.output

        result = runner.invoke(app, ["merge", path, "--no-review"])
        assert result.exit_code == 1
        assert "Quality gate rejected" in result.output

        result = runner.invoke(app, ["approve", "t-bad", "-m", "cik fixed upstream"])
        assert result.exit_code == 0
        assert runner.invoke(app, ["merge", path, "--no-review"]).exit_code == 0

    def test_violations(self, project):
        transform = Transform(transform_id="t-bad", entities=[company("c1", "123", "Globex Corporation")])
        runner.invoke(app, ["check", _write(project, transform)])

        result = runner.invoke(app, ["violations", "t-bad", "--severity", "error"])
        assert result.exit_code == 0
        assert "Violations (1)" in result.output
        assert "No matching" in runner.invoke(app, ["violations", "t-bad", "--severity", "info"]).output
        assert runner.invoke(app, ["violations", "t-unknown"]).exit_code == 1

    def test_rejected_transform(self, project, sample_transform):
        path = _write(project, sample_transform)
        runner.invoke(app, ["check", path])
        assert runner.invoke(app, ["reject", "t-new", "-m", "wrong filing"]).exit_code == 0
        assert runner.invoke(app, ["merge", path, "--no-review"]).exit_code == 1

    def test_missing_transform_file(self, project):
        result = runner.invoke(app, ["check", str(project / "missing.json")])
        assert result.exit_code == 1
        assert "Error" in result.output


class TestConflictRoundTrip:
    """Open conflicts go to YAML and come back as decisions."""

    def test_decisions_file(self, project):
        seed = Transform(transform_id="t-seed", entities=[company("c1", ACME_CIK, "Acme Inc")])
        path = _write(project, seed)
        runner.invoke(app, ["check", path])
        assert runner.invoke(app, ["merge", path, "--no-review"]).exit_code == 0

        rename = Transform(transform_id="t-rename", entities=[company("c1", ACME_CIK, "Acme Corporation")])
        path = _write(project, rename)
        runner.invoke(app, ["check", path])
        result = runner.invoke(app, ["merge", path, "--no-review"])
        assert result.exit_code == 0, result.output
        assert "cancelled" in result.output

        conflicts_path = project / "output" / "conflicts" / "t-rename.yaml"
        data = yaml.safe_load(conflicts_path.read_text())
        assert data["conflicts"][0]["conflict_type"] == "property_conflict"
        data["conflicts"][0]["decision"] = {"strategy": "ACCEPT", "learning_comment": "renamed in 10-K"}
        conflicts_path.write_text(yaml.safe_dump(data))

        result = runner.invoke(app, ["merge", path, "--decisions", str(conflicts_path), "--no-review"])
        assert result.exit_code == 0, result.output
        assert "Merge run completed" in result.output

        with _graph(project) as store:
            assert store.get_entity(ACME_ID).properties["name"] == "Acme Corporation"
            assert [v.version for v in store.history(ACME_ID)] == [1, 2]

        result = runner.invoke(app, ["feedback"])
        assert result.exit_code == 0
        assert "ACCEPT" in result.output

    def test_interactive_review(self, project):
        seed = Transform(transform_id="t-seed", entities=[company("c1", ACME_CIK, "Acme Inc")])
        path = _write(project, seed)
        runner.invoke(app, ["check", path])
        runner.invoke(app, ["merge", path])

        rename = Transform(transform_id="t-rename", entities=[company("c1", ACME_CIK, "Acme Corporation")])
        path = _write(project, rename)
        runner.invoke(app, ["check", path])
        result = runner.invoke(app, ["merge", path], input="r\nkeep the registered name\n")
        assert result.exit_code == 0, result.output
        assert "Merge run completed" in result.output

        with _graph(project) as store:
            assert store.get_entity(ACME_ID).version == 1
            assert store.feedback()[0].learning_comment == "keep the registered name"


class TestInspection:
    """history, export, ontologies, init and info."""

    @pytest.fixture
    def merged(self, project, sample_transform):
        path = _write(project, sample_transform)
        runner.invoke(app, ["check", path])
        runner.invoke(app, ["merge", path, "--no-review"])
        return project

    def test_history(self, merged):
        result = runner.invoke(app, ["history", "company:0000000001"])
        assert result.exit_code == 0
        assert "History" in result.output
        assert runner.invoke(app, ["history", "company:nope"]).exit_code == 1

    def test_export(self, merged):
        target = merged / "graph.json"
        result = runner.invoke(app, ["export", "--to", str(target)])
        assert result.exit_code == 0, result.output
        data = json.loads(target.read_text())
        assert data["metadata"]["entity_count"] == 3
        assert data["metadata"]["relation_count"] == 2

    def test_export_without_graph(self, project):
        result = runner.invoke(app, ["export"])
        assert result.exit_code == 1
        assert "No graph yet" in result.output

    def test_ontologies(self):
        result = runner.invoke(app, ["ontologies"])
        assert result.exit_code == 0
        assert "company" in result.output

    def test_init(self, project):
        result = runner.invoke(app, ["init", "--ontology", "company"])
        assert result.exit_code == 0
        assert "ontology: company" in (project / "kgm.yaml").read_text()
        assert "KGM_AUTO_RESOLVE_THRESHOLD" in (project / ".env.example").read_text()

    def test_info(self, merged):
        result = runner.invoke(app, ["info"])
        assert result.exit_code == 0, result.output
        assert "Company Filings" in result.output
        assert "3 entities" in result.output
