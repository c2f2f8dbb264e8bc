import os
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent

def _is_container_runtime():
    if os.path.exists("/.dockerenv"):
        return True
    return os.path.isdir("/data")


def _default_root_paths():
    if _is_container_runtime():
        return {"data": Path("/data"), "config": Path("/config")}
    base = PROJECT_ROOT / "data"
    return {"data": base, "config": base / "config"}


_DEFAULTS = _default_root_paths()

DATA_DIR = Path(os.environ.get("PLAYLIST_VOTE_DATA_DIR", _DEFAULTS["data"])).resolve()
CONFIG_DIR = Path(os.environ.get("PLAYLIST_VOTE_CONFIG_DIR", _DEFAULTS["config"])).resolve()
DB_PATH = Path(os.environ.get("PLAYLIST_VOTE_DB_PATH", DATA_DIR / "database" / "playlist_vote.sqlite")).resolve()


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def resolve_config_path(path):
    path = path or os.environ.get("PLAYLIST_VOTE_CONFIG")
    if not path:
        return os.path.join(CONFIG_DIR, "config.json")
    if os.path.isabs(path):
        return os.path.abspath(path)
    return os.path.abspath(os.path.join(CONFIG_DIR, path))


def resolve_db_path(path=None):
    resolved = Path(path).resolve() if path else DB_PATH
    ensure_dir(resolved.parent)
    return str(resolved)
