from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from conftest import FakeExtractor, FakeImageSource, make_detection

from facerec.config import DetectorModel
from facerec.face.dataset import Dataset
from facerec.face.fallback import ModelFallbackPolicy
from facerec.face.image_source import FileImageSource
from facerec.face.types import DatasetEntry

A = DetectorModel.INSIGHTFACE


def _policy_for(faces: dict) -> ModelFallbackPolicy:
    """Policy whose single model finds `faces[ref]` (None -> no face)."""
    extractor = FakeExtractor(responses={A: lambda image: faces.get(image)})
    return ModelFallbackPolicy(extractor, [A])


def test_append_and_empty_label():
    ds = Dataset()
    ds.append("alice", "alice.jpg")
    ds.add_image("bob", "bob.jpg")
    assert [e.label for e in ds] == ["alice", "bob"]
    with pytest.raises(ValueError):
        ds.append("", "x.jpg")


def test_bulk_import_accepts_mappings_pairs_and_entries():
    ds = Dataset()
    added = ds.bulk_import(
        [
            {"label": "alice", "image_ref": "a.jpg"},
            {"label": "bob", "imageurl": "https://example.com/b.jpg"},
            ("carol", "c.jpg"),
            DatasetEntry("dave", "d.jpg"),
        ]
    )
    assert added == 4
    assert [(e.label, e.image_ref) for e in ds] == [
        ("alice", "a.jpg"),
        ("bob", "https://example.com/b.jpg"),
        ("carol", "c.jpg"),
        ("dave", "d.jpg"),
    ]


def test_bulk_import_transform_incomplete_entries_are_skipped(caplog):
    raw = [
        {"name": "alice", "file": "a.jpg"},
        {"name": "", "file": "x.jpg"},
        {"name": "bob"},
        {"name": "carol", "file": "c.jpg"},
    ]
    ds = Dataset()
    added = ds.bulk_import(raw, transform=lambda e: {"label": e.get("name"), "image_ref": e.get("file")})

    assert added == 2
    assert [e.label for e in ds] == ["alice", "carol"]
    assert sum("跳过不完整的条目" in r.getMessage() for r in caplog.records) == 2


def test_bulk_import_without_transform_skips_malformed():
    ds = Dataset()
    assert ds.bulk_import([{"label": "alice"}, 42, ("bob", "b.jpg")]) == 1
    assert [e.label for e in ds] == ["bob"]


def test_to_gallery_skips_entries_without_faces():
    faces = {
        "1.jpg": make_detection([1.0, 0.0]),
        "3.jpg": make_detection([0.0, 1.0]),
        "5.jpg": make_detection([1.0, 1.0]),
    }
    ds = Dataset()
    for i, label in enumerate(["p1", "p2", "p3", "p4", "p5"], start=1):
        ds.append(label, f"{i}.jpg")

    report = ds.to_gallery(_policy_for(faces), FakeImageSource())

    assert len(report.gallery) == 3
    assert report.gallery.labels == ["p1", "p3", "p5"]
    assert [e.image_ref for e, _ in report.skipped] == ["2.jpg", "4.jpg"]
    assert report.skipped_count == 2
    assert all(len(s) == 1 for s in report.gallery)


def test_to_gallery_skips_unreadable_images():
    faces = {"a.jpg": make_detection([1.0]), "b.jpg": make_detection([2.0])}
    ds = Dataset()
    ds.append("alice", "a.jpg")
    ds.append("bob", "b.jpg")

    report = ds.to_gallery(_policy_for(faces), FakeImageSource(broken={"a.jpg"}))

    assert report.gallery.labels == ["bob"]
    assert "Could not fetch image" in report.skipped[0][1]


def test_to_gallery_parallel_keeps_append_order():
    faces = {f"{i}.jpg": make_detection([float(i), 0.0]) for i in range(20) if i % 3}
    ds = Dataset()
    for i in range(20):
        ds.append(f"p{i}", f"{i}.jpg")

    report = ds.to_gallery(_policy_for(faces), FakeImageSource(), max_workers=4)

    assert report.gallery.labels == [f"p{i}" for i in range(20) if i % 3]
    assert report.skipped_count == 7
    first = report.gallery[0].descriptors[0]
    np.testing.assert_allclose(first, [1.0, 0.0])


def test_merge_by_label_pools_descriptors():
    faces = {"a1": make_detection([1.0, 0.0]), "b": make_detection([0.0, 1.0]), "a2": make_detection([0.9, 0.1])}
    ds = Dataset()
    ds.append("alice", "a1")
    ds.append("bob", "b")
    ds.append("alice", "a2")

    merged = ds.to_gallery(_policy_for(faces), FakeImageSource()).merge_by_label()

    assert merged.labels == ["alice", "bob"]
    assert len(merged[0]) == 2
    assert merged.stats["alice"]["count"] == 2


def test_from_directory(tmp_path: Path):
    for person, files in {"alice": ["1.jpg", "2.PNG", "notes.txt"], "bob": ["x.jpeg"]}.items():
        (tmp_path / person).mkdir()
        for f in files:
            (tmp_path / person / f).write_bytes(b"")
    (tmp_path / "stray.jpg").write_bytes(b"")

    ds = Dataset.from_directory(tmp_path)

    assert [(e.label, Path(e.image_ref).name) for e in ds] == [
        ("alice", "1.jpg"),
        ("alice", "2.PNG"),
        ("bob", "x.jpeg"),
    ]


def test_from_directory_missing(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        Dataset.from_directory(tmp_path / "nope")


def test_to_gallery_survives_empty_and_unusable_files(tmp_path: Path):
    (tmp_path / "empty.jpg").write_bytes(b"")
    good = np.zeros((4, 4, 3), dtype=np.uint8)
    extractor = FakeExtractor(responses={A: make_detection([1.0, 0.0])})
    ds = Dataset()
    ds.append("broken", str(tmp_path / "empty.jpg"))
    ds.append("uri", "data:image/jpeg;base64," + "A" * 5000)
    ds.bulk_import([{"label": "number", "image_ref": 123}])
    ds.append("alice", good)

    report = ds.to_gallery(ModelFallbackPolicy(extractor, [A]), FileImageSource())

    assert report.gallery.labels == ["alice"]
    assert [e.label for e, _ in report.skipped] == ["broken", "uri", "number"]
    assert all("Could not fetch image" in reason for _, reason in report.skipped)
