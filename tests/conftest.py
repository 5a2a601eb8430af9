"""Shared fixtures: a throwaway document root with a few static files."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from asset_shield import AssetShield, Settings

if TYPE_CHECKING:
    from pathlib import Path

SITE_URL = "https://example.test"


@pytest.fixture()
def docroot(tmp_path: Path) -> Path:
    """Create a minimal site tree under ``tmp_path/www``."""
    root = tmp_path / "www"
    (root / "site").mkdir(parents=True)
    (root / "site" / "style.css").write_text("body { color: red; }\n", encoding="utf-8")
    (root / "site" / "app.js").write_text("console.log('hi');\n", encoding="utf-8")
    (root / "site" / "a.png").write_bytes(b"\x89PNG\r\n\x1a\nfake-image")
    (root / "site" / "a@2x.png").write_bytes(b"\x89PNG\r\n\x1a\nfake-image-2x")
    (root / "site" / "empty.css").write_bytes(b"")
    (root / "site" / "page.php").write_text("<?php echo 1;", encoding="utf-8")
    return root


@pytest.fixture()
def settings(docroot: Path) -> Settings:
    return Settings(site_url=SITE_URL, document_root=str(docroot))


@pytest.fixture()
def shield(settings: Settings) -> AssetShield:
    return AssetShield(settings)
