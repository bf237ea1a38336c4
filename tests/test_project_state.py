"""
Tests for per-project record storage
"""
import pytest

from clusternet.project_state import ProjectStore, StateError


@pytest.fixture
def store(tmp_path):
    return ProjectStore(directory=tmp_path)


class TestProjectStore:
    """Test ProjectStore"""

    def test_default_directory_honors_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CLUSTERNET_HOME", str(tmp_path / "home"))

        assert ProjectStore().path("demo") == tmp_path / "home" / "demo.yaml"

    def test_load_missing(self, store):
        assert store.load("demo") is None

    def test_save_and_load(self, store):
        store.save("demo", {"driver": "kind", "num_clusters": 2})

        record = store.load("demo")
        assert record["project"] == "demo"
        assert record["driver"] == "kind"
        assert record["num_clusters"] == 2
        assert "updated_at" in record

    def test_save_creates_directory(self, tmp_path):
        store = ProjectStore(directory=tmp_path / "a" / "b")
        store.save("demo", {})

        assert store.path("demo").exists()

    def test_empty_file(self, store, tmp_path):
        (tmp_path / "demo.yaml").write_text("")

        assert store.load("demo") == {"project": "demo"}

    def test_invalid_yaml(self, store, tmp_path):
        (tmp_path / "demo.yaml").write_text("key: [unclosed\n")

        with pytest.raises(StateError):
            store.load("demo")

    def test_non_mapping(self, store, tmp_path):
        (tmp_path / "demo.yaml").write_text("- a\n- b\n")

        with pytest.raises(StateError):
            store.load("demo")

    def test_update_merges(self, store):
        store.save("demo", {"driver": "kind", "metallb_allocations": []})
        store.update("demo", subnet_cidr="10.90.0.0/16")

        record = store.load("demo")
        assert record["driver"] == "kind"
        assert record["subnet_cidr"] == "10.90.0.0/16"
        assert record["metallb_allocations"] == []

    def test_update_creates_record(self, store):
        record = store.update("demo", driver="minikube")

        assert record["driver"] == "minikube"
        assert store.load("demo")["driver"] == "minikube"

    def test_delete(self, store):
        store.save("demo", {})

        assert store.delete("demo") is True
        assert store.load("demo") is None
        assert store.delete("demo") is False

    def test_list_projects(self, store, tmp_path):
        store.save("beta", {})
        store.save("alpha", {})
        (tmp_path / "notes.txt").write_text("ignored")

        assert store.list_projects() == ["alpha", "beta"]

    def test_list_projects_missing_directory(self, tmp_path):
        assert ProjectStore(directory=tmp_path / "nope").list_projects() == []

    def test_list_all_skips_unreadable(self, store, tmp_path):
        store.save("good", {"driver": "kind"})
        (tmp_path / "bad.yaml").write_text("key: [unclosed\n")

        records = store.list_all()
        assert [r["project"] for r in records] == ["good"]
