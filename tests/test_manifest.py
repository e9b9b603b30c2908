from __future__ import annotations

import json
from pathlib import Path

from amplidenoise.manifest import TRACKED_PACKAGES, create_run_manifest, finalize_manifest, write_manifest
from amplidenoise.paths import MANIFEST_NAME, create_output_layout


def test_manifest_lifecycle_is_written_to_layout_path(tmp_path: Path) -> None:
    layout = create_output_layout(tmp_path / "run")
    manifest = create_run_manifest(
        command="calibrate",
        argv=["amplidenoise", "calibrate"],
        config_path=None,
        parameters={"threads": 2, "max_aligns": 10},
        inputs=[tmp_path / "seqs.fasta"],
        steps=["Load", "Compare"],
    )

    path = write_manifest(layout, manifest)

    assert path == layout.manifest_path == tmp_path / "run" / MANIFEST_NAME
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["status"] == "running"
    assert payload["ended_at"] is None
    assert payload["inputs"] == [str(tmp_path / "seqs.fasta")]
    assert set(payload["versions"]) == {"amplidenoise", "python", *TRACKED_PACKAGES}

    finalize_manifest(
        manifest,
        status="completed",
        outputs=[layout.calibration_tsv],
        statistics={"pairs": 10},
    )
    write_manifest(layout, manifest)

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["status"] == "completed"
    assert payload["outputs"] == [str(layout.calibration_tsv)]
    assert payload["statistics"] == {"pairs": 10}
    assert payload["parameters"]["threads"] == 2
