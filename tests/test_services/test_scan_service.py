"""Tests for the local file scanner."""

from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any
from unittest.mock import patch

import pytest

from cossync.services.scan_service import (
    compute_digest,
    is_excluded,
    scan_root,
    scan_roots,
    to_storage_key,
)
from tests.conftest import FIXED_MTIME, write_file

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

EXCLUDED = (".map", ".txt", ".md")


class TestStorageKey:
    def test_strips_client_prefix(self) -> None:
        assert to_storage_key("client/assets/app.js", ["client/"]) == "assets/app.js"

    def test_static_layout_unchanged(self) -> None:
        assert to_storage_key("assets/app.js", ["client/"]) == "assets/app.js"

    def test_backslashes_become_slashes(self) -> None:
        assert to_storage_key("client\\fonts\\a.woff2", ["client/"]) == "fonts/a.woff2"

    def test_leading_slash_removed(self) -> None:
        assert to_storage_key("/images/logo.svg") == "images/logo.svg"

    def test_only_first_matching_prefix_stripped(self) -> None:
        assert to_storage_key("client/client/x.js", ["client/", "client/client/"]) == "client/x.js"


class TestExclusion:
    def test_excluded_extensions(self) -> None:
        assert is_excluded("app.js.map", EXCLUDED)
        assert is_excluded("robots.txt", EXCLUDED)
        assert is_excluded("README.md", EXCLUDED)

    def test_case_insensitive(self) -> None:
        assert is_excluded("NOTES.MD", EXCLUDED)

    def test_regular_assets_kept(self) -> None:
        assert not is_excluded("app.js", EXCLUDED)
        assert not is_excluded("mapfile", EXCLUDED)


class TestDigest:
    def test_matches_hashlib(self, tmp_path: Path) -> None:
        path = write_file(tmp_path, "a.bin", b"hello world")
        assert compute_digest(path) == hashlib.md5(b"hello world").hexdigest()

    def test_large_file_streamed(self, tmp_path: Path) -> None:
        data = b"x" * (200 * 1024 + 7)
        path = write_file(tmp_path, "big.bin", data)
        assert compute_digest(path) == hashlib.md5(data).hexdigest()

    def test_empty_file(self, tmp_path: Path) -> None:
        path = write_file(tmp_path, "empty", b"")
        assert compute_digest(path) == hashlib.md5(b"").hexdigest()


class TestScan:
    def test_scan_root_records(self, dist_dir: Path) -> None:
        records = scan_root(
            dist_dir,
            dist_dir / "client/assets",
            excluded_extensions=EXCLUDED,
            strip_prefixes=["client/"],
        )
        by_key = {r.key: r for r in records}
        assert set(by_key) == {"assets/app.js", "assets/style.css"}
        app = by_key["assets/app.js"]
        assert app.size == len("console.log('app');")
        assert app.modified_at == FIXED_MTIME
        assert app.digest is None

    def test_scan_roots_skips_missing_roots(self, dist_dir: Path) -> None:
        records = scan_roots(
            dist_dir,
            ["client/assets", "assets", "nope"],
            excluded_extensions=EXCLUDED,
            strip_prefixes=["client/"],
        )
        assert sorted(r.key for r in records) == ["assets/app.js", "assets/style.css"]

    def test_excluded_files_never_scanned(self, dist_dir: Path) -> None:
        records = scan_roots(
            dist_dir,
            ["client/assets", "client/images"],
            excluded_extensions=EXCLUDED,
            strip_prefixes=["client/"],
        )
        keys = {r.key for r in records}
        assert "assets/app.js.map" not in keys
        assert "images/README.md" not in keys
        assert "images/logo.svg" in keys

    def test_nested_directories(self, tmp_path: Path) -> None:
        write_file(tmp_path, "assets/js/chunks/a.js", "a")
        records = scan_roots(tmp_path, ["assets"])
        assert [r.key for r in records] == ["assets/js/chunks/a.js"]

    def test_duplicate_keys_first_root_wins(self, tmp_path: Path) -> None:
        write_file(tmp_path, "client/assets/app.js", "server build")
        write_file(tmp_path, "assets/app.js", "static build")
        records = scan_roots(
            tmp_path, ["client/assets", "assets"], strip_prefixes=["client/"]
        )
        assert len(records) == 1
        assert records[0].path == tmp_path / "client/assets/app.js"

    def test_empty_when_no_roots_exist(self, tmp_path: Path) -> None:
        assert scan_roots(tmp_path, ["assets", "fonts"]) == []

    def test_unreadable_directory_is_skipped(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        write_file(tmp_path, "assets/a.js", "a")
        write_file(tmp_path, "assets/b.css", "b")
        root = tmp_path / "assets"
        listing = list(os.walk(root))

        def walk(top: Path, onerror: Callable[[OSError], None]) -> Iterator[object]:
            onerror(PermissionError(13, "Permission denied", str(root / "locked")))
            yield from listing

        with (
            caplog.at_level(logging.WARNING),
            patch("cossync.services.scan_service.os.walk", side_effect=walk),
        ):
            records = scan_root(tmp_path, root)

        assert sorted(r.key for r in records) == ["assets/a.js", "assets/b.css"]
        assert "Skipping unreadable directory" in caplog.text
        assert "locked" in caplog.text

    def test_unreadable_file_is_skipped(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        write_file(tmp_path, "assets/a.js", "a")
        write_file(tmp_path, "assets/broken.js", "b")
        write_file(tmp_path, "assets/c.css", "c")
        real_stat = Path.stat

        def stat(self: Path, *args: Any, **kwargs: Any) -> os.stat_result:
            if self.name == "broken.js":
                raise PermissionError(13, "Permission denied", str(self))
            return real_stat(self, *args, **kwargs)

        with (
            caplog.at_level(logging.WARNING),
            patch.object(Path, "stat", autospec=True, side_effect=stat),
        ):
            records = scan_roots(tmp_path, ["assets"])

        assert sorted(r.key for r in records) == ["assets/a.js", "assets/c.css"]
        assert "Skipping unreadable file" in caplog.text
