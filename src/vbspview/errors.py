from __future__ import annotations


class VbspviewError(RuntimeError):
    pass


class AssetNotFound(VbspviewError):
    """Raised when no asset source can provide a logical asset name."""

    def __init__(self, name: str, searched: list[str] | None = None) -> None:
        self.name = name
        self.searched = list(searched or [])
        msg = f"asset not found: {name}"
        if self.searched:
            msg += f" (searched: {', '.join(self.searched[:5])}{'...' if len(self.searched) > 5 else ''})"
        super().__init__(msg)


class FormatError(VbspviewError):
    pass


class KeyValuesError(FormatError):
    pass


class VtfError(FormatError):
    pass


class BspError(FormatError):
    pass


class ModelError(FormatError):
    pass


class MaterialError(VbspviewError):
    pass


class PatchDepthError(MaterialError):
    """Raised when `patch` materials nest deeper than allowed (including include cycles)."""

    def __init__(self, chain: list[str], max_depth: int) -> None:
        self.chain = list(chain)
        self.max_depth = int(max_depth)
        super().__init__(f"patch include depth exceeded ({max_depth}): {' -> '.join(self.chain[-4:])}")


class MapLoadError(VbspviewError):
    """Fatal map load failure (unreadable level container or missing world model)."""
