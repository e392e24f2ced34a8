from importlib.metadata import version, PackageNotFoundError

__version__ = None  # required for initial installation

try:
    __version__ = version("track_alignment")
except PackageNotFoundError:
    __version__ = "(local)"
