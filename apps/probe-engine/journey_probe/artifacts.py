"""Per-run audit artifacts: event journal, JSON summary and JUnit report."""

from __future__ import annotations

import json
import threading
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, TextIO

from .models import ProbeRun


@dataclass
class RunArtifacts:
    run_dir: Path
    events_file: Path
    summary_file: Path
    junit_file: Path

    @classmethod
    def prepare(cls, output_root: Path, run_id: str) -> "RunArtifacts":
        run_dir = output_root / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        return cls(
            run_dir=run_dir,
            events_file=run_dir / "events.jsonl",
            summary_file=run_dir / "summary.json",
            junit_file=run_dir / "results.junit.xml",
        )


class RunJournal:
    """Run observer appending transitions and inbound events as JSON lines."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._handle: Optional[TextIO] = path.open("w", encoding="utf-8")

    def __call__(self, event: dict[str, Any]) -> None:
        line = json.dumps(event, default=str, ensure_ascii=False)
        with self._lock:
            if self._handle is None:
                return
            self._handle.write(line + "\n")
            self._handle.flush()

    def close(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.close()
                self._handle = None


def write_summary(run: ProbeRun, artifacts: RunArtifacts) -> None:
    payload = run.model_dump(mode="json")
    payload["duration_ms"] = run.duration_ms
    artifacts.summary_file.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")


def write_junit(run: ProbeRun, artifacts: RunArtifacts) -> None:
    failures = [timing for timing in run.steps if timing.status != "passed"]
    suite = ET.Element(
        "testsuite",
        attrib={
            "name": run.scenario_id,
            "tests": str(len(run.steps)),
            "failures": str(len(failures)),
            "timestamp": run.started_at.isoformat() if run.started_at else "",
        },
    )
    latencies = {record.step_id: record.duration_ms for record in run.latencies}
    for timing in run.steps:
        case = ET.SubElement(
            suite,
            "testcase",
            attrib={
                "classname": run.scenario_id,
                "name": timing.step_id,
                "time": str(latencies.get(timing.step_id, 0.0) / 1000),
            },
        )
        if timing.status == "passed":
            continue
        if run.failure and run.failure.step_id == timing.step_id:
            failure = ET.SubElement(case, "failure", attrib={"message": run.failure.kind.value})
            failure.text = run.failure.detail or ""
        else:
            ET.SubElement(case, "skipped", attrib={"message": f"run {run.status.value}"})
    ET.ElementTree(suite).write(artifacts.junit_file, encoding="utf-8", xml_declaration=True)
