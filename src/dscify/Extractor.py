"""Native dyld_shared_cache extractor backend.

Xcode ships `dsc_extractor.bundle`, which exports
`dyld_shared_cache_extract_dylibs_progress(cache, output, ^(completed, total))`.
This module resolves the bundle (an explicit path, or the one inside the
active developer directory reported by `xcode-select -p`), binds the
function with `ctypes` and exposes it as a `SymbolExtractor`.

The bound function reports nothing but progress. Whether an extraction
actually produced anything can only be inferred from the progress reaching
its total; no stronger guarantee is made here.
"""

from __future__ import annotations

import ctypes
import logging
import os
import subprocess
from pathlib import Path

from .Errors import ExtractorUnavailable
from .Progress import ProgressCallback

logger = logging.getLogger(__name__)

EXTRACT_SYMBOL = "dyld_shared_cache_extract_dylibs_progress"
EXTRACTOR_BUNDLE = Path("Platforms/iPhoneOS.platform/usr/lib/dsc_extractor.bundle")
XCODE_SELECT = "/usr/bin/xcode-select"
LIBSYSTEM = "/usr/lib/libSystem.B.dylib"

BLOCK_IS_GLOBAL = 1 << 28

# void (^)(unsigned int completed, unsigned int total); first argument is the block itself
_BlockInvoke = ctypes.CFUNCTYPE(None, ctypes.c_void_p, ctypes.c_uint, ctypes.c_uint)


class _BlockDescriptor(ctypes.Structure):
    _fields_ = [
        ("reserved", ctypes.c_ulong),
        ("size", ctypes.c_ulong),
    ]


class _BlockLiteral(ctypes.Structure):
    _fields_ = [
        ("isa", ctypes.c_void_p),
        ("flags", ctypes.c_int),
        ("reserved", ctypes.c_int),
        ("invoke", _BlockInvoke),
        ("descriptor", ctypes.POINTER(_BlockDescriptor)),
    ]


_DESCRIPTOR = _BlockDescriptor(0, ctypes.sizeof(_BlockLiteral))


def developer_dir(xcode_select: str = XCODE_SELECT) -> Path:
    """Return the active developer directory as reported by `xcode-select -p`.

    Raises:
        ExtractorUnavailable: If xcode-select cannot be run or prints nothing.
    """
    try:
        result = subprocess.run([xcode_select, "-p"], capture_output=True, text=True, check=True)
    except (OSError, subprocess.CalledProcessError) as e:
        raise ExtractorUnavailable(f"Could not locate developer directory: {e}") from e

    path = result.stdout.strip()
    if not path:
        raise ExtractorUnavailable("xcode-select did not report a developer directory")
    return Path(path)


def resolve_extractor_path(override: str | Path | None = None) -> Path:
    """Return `override` if given, else the bundle inside the developer directory."""
    if override is not None:
        return Path(override)
    return developer_dir() / EXTRACTOR_BUNDLE


class NativeCacheExtractor:
    """
    SymbolExtractor backed by Xcode's dsc_extractor.bundle.

    Attributes:
        path (Path): The loaded bundle.
    """

    def __init__(self, path: str | Path) -> None:
        """
        Load the bundle and bind the extraction function.

        Raises:
            ExtractorUnavailable: If the bundle cannot be loaded or does not
                export the extraction function.
        """
        self.path = Path(path)
        try:
            self._library = ctypes.CDLL(str(self.path), mode=os.RTLD_LAZY)
        except OSError as e:
            raise ExtractorUnavailable(f"Could not load extractor: {e}") from e

        try:
            self._function = getattr(self._library, EXTRACT_SYMBOL)
        except AttributeError as e:
            raise ExtractorUnavailable(f"Could not find {EXTRACT_SYMBOL}: {e}") from e

        try:
            libsystem = ctypes.CDLL(LIBSYSTEM)
            self._block_isa = ctypes.addressof(ctypes.c_void_p.in_dll(libsystem, "_NSConcreteGlobalBlock"))
        except (OSError, ValueError) as e:
            raise ExtractorUnavailable(f"Block runtime unavailable: {e}") from e

        self._function.argtypes = [ctypes.c_char_p, ctypes.c_char_p, ctypes.c_void_p]
        self._function.restype = None
        logger.debug("Loaded %s from %s", EXTRACT_SYMBOL, self.path)

    def extract(self, cache: Path, output: Path, progress: ProgressCallback | None = None) -> None:
        """Extract the dylibs of `cache` into `output`. Blocks until done."""

        def invoke(_block, completed, total):
            if progress is not None:
                progress(completed, total)

        # Both objects must outlive the call
        callback = _BlockInvoke(invoke)
        block = _BlockLiteral(
            isa=self._block_isa,
            flags=BLOCK_IS_GLOBAL,
            reserved=0,
            invoke=callback,
            descriptor=ctypes.pointer(_DESCRIPTOR),
        )
        self._function(os.fsencode(cache), os.fsencode(output), ctypes.byref(block))


def load_extractor(override: str | Path | None = None) -> NativeCacheExtractor:
    """Resolve and load the native extractor.

    Raises:
        ExtractorUnavailable: If it cannot be resolved or loaded.
    """
    path = resolve_extractor_path(override)
    logger.info("Using extractor at %s", path)
    return NativeCacheExtractor(path)
