from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pytest

from conftest import FakeExtractor, FakeImageSource, make_detection

from facerec import cli
from facerec.config import DetectorModel
from facerec.errors import ImageLoadError, InitializationError
from facerec.face.image_source import ImageSource
from facerec.face.recognizer import Recognizer

GALLERY_FACES = {
    "alice.jpg": make_detection([0.0, 0.0, 1.0]),
    "bob.jpg": make_detection([1.0, 0.0, 0.0]),
}


class _ArrayImageSource(ImageSource):
    """Each ref maps to a small image whose first pixel holds the ref's index."""

    def __init__(self, refs, broken=()):
        self.index = {ref: i + 1 for i, ref in enumerate(refs)}
        self.broken = set(broken)

    def fetch_or_load(self, ref):
        if ref in self.broken:
            raise ImageLoadError(ref, OSError("gone"))
        return np.full((100, 100, 3), self.index[ref], dtype=np.uint8)


def _write_manifest(tmp_path: Path) -> Path:
    manifest = tmp_path / "manifest.json"
    manifest.write_text(
        json.dumps(
            [
                {"label": "alice", "image_ref": "alice.jpg"},
                {"label": "bob", "image_ref": "bob.jpg"},
                {"label": "ghost", "image_ref": "ghost.jpg"},
            ]
        ),
        encoding="utf-8",
    )
    return manifest


def _build(tmp_path: Path, *extra) -> Path:
    out = tmp_path / "rec.json"
    code = cli.main(
        ["build", "--manifest", str(_write_manifest(tmp_path)), "-o", str(out), "-t", "0.5", *extra],
        extractor_factory=lambda cfg: FakeExtractor(
            responses={DetectorModel.INSIGHTFACE: lambda image: GALLERY_FACES.get(image)}
        ),
        image_source=FakeImageSource(),
    )
    assert code == 0
    return out


def test_build_from_manifest_skips_faceless_entries(tmp_path: Path):
    out = _build(tmp_path)

    rec = Recognizer.load(out)
    assert rec.labels == ["alice", "bob"]
    assert rec.threshold == 0.5


def test_build_with_nothing_recognizable_fails(tmp_path: Path):
    code = cli.main(
        ["build", "--manifest", str(_write_manifest(tmp_path)), "-o", str(tmp_path / "rec.json")],
        extractor_factory=lambda cfg: FakeExtractor(),
        image_source=FakeImageSource(),
    )
    assert code == 1
    assert not (tmp_path / "rec.json").exists()


def test_recognize_writes_json_and_images(tmp_path: Path):
    rec_path = _build(tmp_path)
    refs = ["group.jpg", "empty.jpg"]
    source = _ArrayImageSource(refs)
    faces = {
        1: [make_detection([0.0, 0.1, 1.0], box=(5, 30, 40, 70)), make_detection([0.0, 9.0, 0.0], box=(50, 30, 90, 70))],
        2: [],
    }
    out_json = tmp_path / "results.json"

    code = cli.main(
        ["recognize", *refs, "-r", str(rec_path), "--output-dir", str(tmp_path / "out"), "-j", str(out_json)],
        extractor_factory=lambda cfg: FakeExtractor(all_faces=lambda image: faces[int(image[0, 0, 0])]),
        image_source=source,
    )

    assert code == 0
    summary = json.loads(out_json.read_text(encoding="utf-8"))
    assert [r["label"] for r in summary["group.jpg"]] == ["alice", "unknown"]
    assert summary["group.jpg"][0]["percent_confidence"] == 90
    assert summary["empty.jpg"] == []
    assert (tmp_path / "out" / "output_group.jpg").exists()
    assert not (tmp_path / "out" / "output_empty.jpg").exists()


def test_recognize_reports_unreadable_images(tmp_path: Path):
    rec_path = _build(tmp_path)
    out_json = tmp_path / "results.json"

    code = cli.main(
        ["recognize", "missing.jpg", "-r", str(rec_path), "-j", str(out_json)],
        extractor_factory=lambda cfg: FakeExtractor(),
        image_source=_ArrayImageSource(["missing.jpg"], broken={"missing.jpg"}),
    )

    assert code == 1
    assert json.loads(out_json.read_text(encoding="utf-8")) == {"missing.jpg": None}


def test_model_that_fails_to_load_is_fatal(tmp_path: Path):
    with pytest.raises(InitializationError):
        cli.main(
            ["build", "--manifest", str(_write_manifest(tmp_path)), "-o", str(tmp_path / "r.json"), "-m", "insightface,yolo"],
            extractor_factory=lambda cfg: FakeExtractor(fail_to_load=(DetectorModel.YOLO,)),
            image_source=FakeImageSource(),
        )


def test_config_from_args(monkeypatch):
    monkeypatch.delenv("FACEREC_THRESHOLD", raising=False)
    monkeypatch.delenv("FACEREC_MODELS", raising=False)
    args = cli.build_parser().parse_args(
        ["build", "-g", "data", "-o", "r.json", "-m", "yolo,insightface", "--primary-model", "insightface_tiled", "--workers", "3"]
    )

    cfg = cli.config_from_args(args)

    assert cfg.model_priority == (DetectorModel.YOLO, DetectorModel.INSIGHTFACE)
    assert cfg.primary_model == DetectorModel.INSIGHTFACE_TILED
    assert set(cfg.enabled_models) == set(DetectorModel)
    assert cfg.max_workers == 3
    assert cfg.distance_threshold == 1.1


def test_primary_model_alone_is_applied_and_enabled(monkeypatch):
    monkeypatch.delenv("FACEREC_MODELS", raising=False)
    args = cli.build_parser().parse_args(["build", "-g", "data", "-o", "r.json", "--primary-model", "insightface_tiled"])

    cfg = cli.config_from_args(args)

    assert cfg.primary_model == DetectorModel.INSIGHTFACE_TILED
    assert cfg.model_priority == (DetectorModel.INSIGHTFACE,)
    assert cfg.enabled_models == (DetectorModel.INSIGHTFACE, DetectorModel.INSIGHTFACE_TILED)


def test_recognize_debug_identify_adds_top_k(tmp_path: Path):
    rec_path = _build(tmp_path)
    source = _ArrayImageSource(["solo.jpg"])
    out_json = tmp_path / "results.json"

    code = cli.main(
        ["recognize", "solo.jpg", "-r", str(rec_path), "-j", str(out_json), "--debug-identify", "--top-k", "2"],
        extractor_factory=lambda cfg: FakeExtractor(all_faces=lambda image: [make_detection([0.9, 0.0, 0.1])]),
        image_source=source,
    )

    assert code == 0
    face = json.loads(out_json.read_text(encoding="utf-8"))["solo.jpg"][0]
    assert face["label"] == "bob"
    assert [c["label"] for c in face["top_k"]] == ["bob", "alice"]
    assert face["top_k"][0]["distance"] == pytest.approx(face["distance"])
