from __future__ import annotations

import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path


def _env(repo_root: Path) -> dict[str, str]:
    env = dict(os.environ)
    for name in (
        "TWITTER_CONSUMER_KEY",
        "TWITTER_CONSUMER_SECRET",
        "TWITTER_ACCESS_TOKEN",
        "TWITTER_ACCESS_SECRET",
    ):
        env.pop(name, None)

    existing_pp = env.get("PYTHONPATH", "")
    env["PYTHONPATH"] = f"{repo_root}{os.pathsep}{existing_pp}" if existing_pp else str(repo_root)
    return env


def _run_cli(repo_root: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, "-m", "social_ingest", *args],
        cwd=repo_root,
        env=_env(repo_root),
        capture_output=True,
        text=True,
    )


class TestCLISmoke(unittest.TestCase):
    def setUp(self) -> None:
        self.repo_root = Path(__file__).resolve().parents[1]

    def test_dry_run_offline_cli(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg_path = Path(td) / "config.yaml"
            cfg_path.write_text("{}", encoding="utf-8")

            proc = _run_cli(self.repo_root, "dry-run", "--config", str(cfg_path), "--offline")

            self.assertEqual(proc.returncode, 0, msg=proc.stderr)
            self.assertIn("fetched=6", proc.stdout)
            self.assertIn("persisted=3", proc.stdout)
            self.assertIn("example_record=", proc.stdout)

    def test_dry_run_without_credentials_is_config_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg_path = Path(td) / "config.yaml"
            cfg_path.write_text("{}", encoding="utf-8")

            proc = _run_cli(self.repo_root, "dry-run", "--config", str(cfg_path))

            self.assertEqual(proc.returncode, 2, msg=proc.stdout)
            self.assertIn("TWITTER_CONSUMER_KEY", proc.stderr)

    def test_offline_run_then_reclean_and_export(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg_path = Path(td) / "config.yaml"
            cfg_path.write_text("search:\n  term: desk setup\n", encoding="utf-8")
            out_dir = Path(td) / "out"

            run = _run_cli(
                self.repo_root, "run", "--config", str(cfg_path), "--out", str(out_dir), "--offline"
            )
            self.assertEqual(run.returncode, 0, msg=run.stderr)
            self.assertIn("status=completed", run.stdout)
            self.assertIn("term=desk setup", run.stdout)
            self.assertIn("records_total=3", run.stdout)
            self.assertTrue((out_dir / "records.sqlite").exists())

            again = _run_cli(
                self.repo_root, "run", "--config", str(cfg_path), "--out", str(out_dir), "--offline"
            )
            self.assertEqual(again.returncode, 0, msg=again.stderr)
            self.assertIn("persisted=0", again.stdout)
            self.assertIn("records_total=3", again.stdout)

            reclean = _run_cli(self.repo_root, "reclean", "--out", str(out_dir))
            self.assertEqual(reclean.returncode, 0, msg=reclean.stderr)
            self.assertIn("scanned=3", reclean.stdout)

            xlsx = Path(td) / "export" / "records.xlsx"
            export = _run_cli(
                self.repo_root,
                "export",
                "--out",
                str(out_dir),
                "--xlsx",
                str(xlsx),
                "--config",
                str(cfg_path),
            )
            self.assertEqual(export.returncode, 0, msg=export.stderr)
            self.assertTrue(xlsx.exists())

    def test_export_without_database_fails(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            proc = _run_cli(self.repo_root, "export", "--out", str(Path(td) / "empty"))
            self.assertEqual(proc.returncode, 3)
            self.assertIn("No database found", proc.stderr)


if __name__ == "__main__":
    unittest.main()
