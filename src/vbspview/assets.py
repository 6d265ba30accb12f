"""
Asset byte providers.

Logical asset names are `/`-separated and matched case-insensitively
(`materials/Brick/Wall01.vmt` == `materials/brick/wall01.vmt`).

Lookup order used by `ChainedLoader.for_game_dir`:
- `<game>/tf` and `<game>/tf/download` (only for `.bsp` names)
- the pakfile embedded in the loaded map (set with `set_pack`)
- `*_dir.vpk` archives in `<game>/tf` and `<game>/hl2`
"""

from __future__ import annotations

import io
import logging
import os
import re
import struct
import sys
import threading
import zipfile
from pathlib import Path
from typing import Protocol

from srctools.vpk import VPK

from vbspview.errors import AssetNotFound, FormatError

logger = logging.getLogger(__name__)

TF2_APP_DIR = "Team Fortress 2"


def normalize_name(name: str) -> str:
    return name.replace("\\", "/").strip().lstrip("/").casefold()


class AssetProvider(Protocol):
    def fetch(self, name: str) -> bytes: ...

    def find_first(self, name: str, prefixes: list[str] | tuple[str, ...]) -> str: ...


class AssetSource(Protocol):
    label: str

    def get(self, name: str) -> bytes | None: ...


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


class DirectorySource:
    """Loose files under a root directory, looked up case-insensitively."""

    def __init__(self, root: Path, *, only_suffixes: tuple[str, ...] | None = None) -> None:
        self.root = Path(root)
        self.label = f"dir:{self.root}"
        self._only_suffixes = tuple(s.casefold() for s in only_suffixes) if only_suffixes else None
        self._listing: dict[Path, dict[str, str]] = {}
        self._lock = threading.Lock()

    def _entries(self, d: Path) -> dict[str, str]:
        with self._lock:
            cached = self._listing.get(d)
            if cached is not None:
                return cached
        try:
            names = {p.name.casefold(): p.name for p in d.iterdir()}
        except OSError:
            names = {}
        with self._lock:
            self._listing[d] = names
        return names

    def _resolve(self, name: str) -> Path | None:
        direct = self.root / name
        if direct.is_file():
            return direct
        cur = self.root
        for part in normalize_name(name).split("/"):
            real = self._entries(cur).get(part)
            if real is None:
                return None
            cur = cur / real
        return cur if cur.is_file() else None

    def get(self, name: str) -> bytes | None:
        if self._only_suffixes is not None and not name.casefold().endswith(self._only_suffixes):
            return None
        path = self._resolve(name)
        if path is None:
            return None
        return path.read_bytes()


class PackfileSource:
    """Zip archive embedded in a BSP (pakfile lump)."""

    def __init__(self, data: bytes, *, label: str = "pakfile") -> None:
        self.label = label
        self._zip = zipfile.ZipFile(io.BytesIO(data), "r")
        self._index = {normalize_name(n): n for n in self._zip.namelist() if not n.endswith("/")}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._index)

    def get(self, name: str) -> bytes | None:
        real = self._index.get(normalize_name(name))
        if real is None:
            return None
        # ZipFile reads share one file object.
        with self._lock:
            return self._zip.read(real)


class VpkSource:
    """Valve `*_dir.vpk` archive set (versions 1 and 2), read with srctools."""

    def __init__(self, dir_path: Path) -> None:
        self.dir_path = Path(dir_path)
        self.label = f"vpk:{self.dir_path.name}"
        if not self.dir_path.name.casefold().endswith("_dir.vpk"):
            raise FormatError(f"not a VPK directory file: {self.dir_path}")
        try:
            self._vpk = VPK(self.dir_path, mode="r")
            self._index = {normalize_name(n): n for n in self._vpk.filenames()}
        except (ValueError, struct.error, EOFError) as exc:
            raise FormatError(f"{self.label}: unreadable VPK directory: {exc}") from exc
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._index)

    def get(self, name: str) -> bytes | None:
        real = self._index.get(normalize_name(name))
        if real is None:
            return None
        with self._lock:
            return self._vpk[real].read()


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


class ChainedLoader:
    """`AssetProvider` that asks each source in order."""

    def __init__(self, sources: list[AssetSource] | None = None) -> None:
        self._sources: list[AssetSource] = list(sources or [])
        self._pack: AssetSource | None = None
        self._pack_slot = 0

    @property
    def sources(self) -> list[AssetSource]:
        out = list(self._sources)
        if self._pack is not None:
            out.insert(self._pack_slot, self._pack)
        return out

    def set_pack(self, pack: AssetSource | None, *, slot: int | None = None) -> None:
        """Install (or clear) the map pakfile; it is searched before the sources from `slot` on."""
        self._pack = pack
        if slot is not None:
            self._pack_slot = max(0, min(int(slot), len(self._sources)))

    def fetch(self, name: str) -> bytes:
        logger.debug("assets: loading %s", name)
        for src in self.sources:
            data = src.get(name)
            if data is not None:
                logger.debug("assets: %s: %d bytes from %s", name, len(data), src.label)
                return data
        logger.info("assets: %s not found in %d sources", name, len(self.sources))
        raise AssetNotFound(name, searched=[s.label for s in self.sources])

    def find_first(self, name: str, prefixes: list[str] | tuple[str, ...]) -> str:
        """First `prefix + name` any source can provide."""
        tried: list[str] = []
        for prefix in prefixes:
            candidate = f"{prefix}{name}"
            tried.append(candidate)
            for src in self.sources:
                if src.get(candidate) is not None:
                    return candidate
        raise AssetNotFound(name, searched=tried)

    @classmethod
    def for_game_dir(cls, game_dir: Path) -> "ChainedLoader":
        game_dir = Path(game_dir)
        tf_dir = game_dir / "tf"
        sources: list[AssetSource] = [
            DirectorySource(tf_dir, only_suffixes=(".bsp",)),
            DirectorySource(tf_dir / "download", only_suffixes=(".bsp",)),
        ]
        pack_slot = len(sources)
        for vpk_dir in (tf_dir, game_dir / "hl2"):
            for vpk in find_vpk_dirs(vpk_dir):
                try:
                    sources.append(VpkSource(vpk))
                except (OSError, FormatError) as exc:
                    logger.warning("assets: skipping %s: %s", vpk, exc)
        loader = cls(sources)
        loader.set_pack(None, slot=pack_slot)
        logger.info("assets: game dir %s, %d sources", game_dir, len(sources))
        return loader


def find_vpk_dirs(directory: Path) -> list[Path]:
    try:
        return sorted(p for p in Path(directory).iterdir() if p.is_file() and p.name.casefold().endswith("dir.vpk"))
    except OSError:
        return []


# ---------------------------------------------------------------------------
# Game directory detection
# ---------------------------------------------------------------------------


def _unescape_vdf_string(s: str) -> str:
    # libraryfolders.vdf commonly escapes backslashes for Windows paths.
    return s.replace("\\\\", "\\")


def parse_libraryfolders_vdf_paths(text: str) -> list[Path]:
    """
    Extract Steam library folder paths from `libraryfolders.vdf`.

    Handles the modern `"path" "<dir>"` layout and the older `"<digit>" "<dir>"` one.
    """
    out: list[Path] = []
    seen: set[str] = set()
    for pattern, group in ((r"\"path\"\s*\"([^\"]+)\"", 1), (r"\"(\d+)\"\s*\"([^\"]+)\"", 2)):
        for m in re.finditer(pattern, text):
            raw = _unescape_vdf_string(m.group(group).strip())
            if not raw or raw.casefold() in seen:
                continue
            seen.add(raw.casefold())
            out.append(Path(raw).expanduser())
    return out


def default_steam_roots() -> list[Path]:
    home = Path.home()
    if sys.platform == "darwin":
        return [home / "Library" / "Application Support" / "Steam"]
    if sys.platform.startswith("win"):
        roots: list[Path] = []
        for env in ("PROGRAMFILES(X86)", "PROGRAMFILES", "LOCALAPPDATA"):
            v = os.environ.get(env)
            if v:
                roots.append(Path(v) / "Steam")
        return roots
    return [home / ".steam" / "steam", home / ".local" / "share" / "Steam"]


def steam_library_roots(steam_root: Path) -> list[Path]:
    """Library roots (directories that contain `steamapps/`), primary first."""
    roots: list[Path] = []
    sr = Path(steam_root)
    if (sr / "steamapps").is_dir():
        roots.append(sr)

    vdf = sr / "steamapps" / "libraryfolders.vdf"
    if vdf.exists():
        try:
            text = vdf.read_text(encoding="utf-8", errors="ignore")
        except OSError as exc:
            logger.debug("assets: cannot read %s: %s", vdf, exc)
            text = ""
        roots.extend(p for p in parse_libraryfolders_vdf_paths(text) if (p / "steamapps").is_dir())

    out: list[Path] = []
    seen: set[str] = set()
    for r in roots:
        k = str(r).casefold()
        if k not in seen:
            seen.add(k)
            out.append(r)
    return out


def detect_tf2_dir(*, environ: dict[str, str] | None = None, steam_roots: list[Path] | None = None) -> Path | None:
    """TF2 install dir: `TF_DIR` if set, else the first Steam library that has it."""
    env = os.environ if environ is None else environ
    explicit = env.get("TF_DIR")
    if explicit:
        return Path(explicit).expanduser()
    for steam_root in steam_roots or default_steam_roots():
        for lib_root in steam_library_roots(steam_root):
            install = lib_root / "steamapps" / "common" / TF2_APP_DIR
            if (install / "tf").is_dir():
                return install
    return None
