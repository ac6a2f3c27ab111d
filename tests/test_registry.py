import pathlib
import sys
import tempfile
import unittest

import yaml


ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from fleet_supervisor.models import ProjectRecord, Registry
from fleet_supervisor.registry import RegistryStore


class RegistryStoreTests(unittest.TestCase):
    def test_missing_file_reads_empty(self):
        with tempfile.TemporaryDirectory() as td:
            store = RegistryStore(pathlib.Path(td) / "nope" / "registry.yaml")
            registry = store.read()
            self.assertEqual(registry.projects, {})
            self.assertEqual(registry.last_updated, "")

    def test_garbage_and_empty_files_read_empty(self):
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "registry.yaml"
            store = RegistryStore(path)
            for content in ("", "{{{ not: [yaml", "just a string", "- a\n- list\n", "projects: 5\n"):
                path.write_text(content, encoding="utf-8")
                registry = store.read()
                self.assertEqual(registry.to_dict(), {"projects": {}, "lastUpdated": ""}, content)

    def test_malformed_rows_are_not_supervised(self):
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "registry.yaml"
            path.write_text(
                yaml.safe_dump(
                    {
                        "projects": {
                            "good": {"path": "/work/good", "status": "running", "agentPid": 10},
                            "no-path": {"status": "idle"},
                            "scalar": "oops",
                        },
                        "lastUpdated": "2026-01-01T00:00:00+00:00",
                    }
                ),
                encoding="utf-8",
            )
            with self.assertLogs("fleet_supervisor.registry", level="WARNING"):
                registry = RegistryStore(path).read()
            self.assertEqual(list(registry.projects), ["good"])
            self.assertEqual(registry.projects["good"].agent_pid, 10)
            self.assertEqual(registry.passthrough, {"no-path": {"status": "idle"}, "scalar": "oops"})

    def test_prune_dead_preserves_rows_and_fields_it_does_not_own(self):
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "registry.yaml"
            path.write_text(
                yaml.safe_dump(
                    {
                        "projects": {
                            "alpha": {
                                "path": "/work/alpha",
                                "status": "running",
                                "agentPid": 200,
                                "customField": {"owner": "ops", "tags": ["nightly"]},
                            },
                            "beta": {"status": "running", "agentPid": 300},
                            "gamma": {"path": "/work/gamma", "status": "paused"},
                        },
                        "lastUpdated": "2026-01-01T00:00:00+00:00",
                        "schemaVersion": 2,
                    }
                ),
                encoding="utf-8",
            )
            store = RegistryStore(path, alive=lambda pid: False)
            with self.assertLogs("fleet_supervisor.registry", level="WARNING"):
                store.prune_dead()
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
            self.assertEqual(raw["schemaVersion"], 2)
            self.assertEqual(raw["projects"]["beta"], {"status": "running", "agentPid": 300})
            alpha = raw["projects"]["alpha"]
            self.assertEqual(alpha["customField"], {"owner": "ops", "tags": ["nightly"]})
            self.assertEqual(alpha["status"], "idle")
            self.assertIsNone(alpha["agentPid"])
            self.assertEqual(raw["projects"]["gamma"]["status"], "paused")

    def test_register_replaces_unsupervised_row(self):
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "registry.yaml"
            path.write_text(yaml.safe_dump({"projects": {"alpha": {"status": "idle"}}}), encoding="utf-8")
            store = RegistryStore(path)
            with self.assertLogs("fleet_supervisor.registry", level="WARNING"):
                store.register(ProjectRecord(name="alpha", path="/work/alpha"))
            registry = store.read()
            self.assertEqual(registry.passthrough, {})
            self.assertEqual(registry.projects["alpha"].path, "/work/alpha")

    def test_write_creates_parent_and_stamps_last_updated(self):
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "deep" / "registry.yaml"
            store = RegistryStore(path)
            registry = Registry(projects={"a": ProjectRecord(name="a", path="/a", status="running", agent_pid=5)})
            store.write(registry)
            self.assertTrue(path.exists())
            self.assertTrue(registry.last_updated)
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
            self.assertEqual(raw["projects"]["a"]["agentPid"], 5)
            again = store.read()
            self.assertEqual(again.projects["a"], registry.projects["a"])
            self.assertEqual(again.last_updated, registry.last_updated)
            self.assertEqual([p.name for p in path.parent.iterdir()], ["registry.yaml"])

    def test_prune_dead_marks_idle_and_clears_pid(self):
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "registry.yaml"
            store = RegistryStore(path, alive=lambda pid: pid == 100)
            store.write(
                Registry(
                    projects={
                        "live": ProjectRecord(name="live", path="/live", status="running", agent_pid=100),
                        "dead": ProjectRecord(name="dead", path="/dead", status="running", agent_pid=200),
                        "idle": ProjectRecord(name="idle", path="/idle"),
                    }
                )
            )
            pruned = store.prune_dead()
            self.assertEqual(pruned.projects["live"].agent_pid, 100)
            self.assertEqual(pruned.projects["dead"].status, "idle")
            self.assertIsNone(pruned.projects["dead"].agent_pid)
            persisted = store.read()
            self.assertEqual(persisted.projects["dead"].status, "idle")
            self.assertEqual(persisted.projects["live"].status, "running")

    def test_register_heartbeat_and_deregister(self):
        with tempfile.TemporaryDirectory() as td:
            store = RegistryStore(pathlib.Path(td) / "registry.yaml")
            store.register(ProjectRecord(name="alpha", path="/work/alpha"))
            self.assertTrue(store.get("alpha").registered_at)

            store.update_heartbeat("alpha", 2, 321, "running")
            record = store.get("alpha")
            self.assertEqual(record.status, "running")
            self.assertEqual(record.agent_pid, 321)
            self.assertEqual(record.current_phase, 2)
            self.assertTrue(record.heartbeat)

            store.update_heartbeat("alpha", 3, 321, "complete")
            self.assertIsNone(store.get("alpha").agent_pid)

            store.deregister("alpha")
            self.assertIsNone(store.get("alpha"))
            self.assertEqual(store.list(), [])


if __name__ == "__main__":
    unittest.main()
