"""
GeoPresence - Application Directories

The relay is often started via sudo or as a systemd unit, where
Path.home() is /root rather than the operator's home. Directories are
resolved against the invoking user's home instead, honouring the XDG
base-directory variables when they are set.
"""

import os
import pwd
from pathlib import Path
from typing import Iterator

APP_DIR_NAME = "geopresence"

# kind -> (XDG override variable, default relative to home)
_APP_DIRS = {
    "config": ("XDG_CONFIG_HOME", Path(".config")),
    "cache": ("XDG_CACHE_HOME", Path(".cache")),
}


def _candidate_users() -> Iterator[str]:
    sudo_user = os.environ.get("SUDO_USER")
    if sudo_user:
        yield sudo_user
    for var in ("LOGNAME", "USER"):
        name = os.environ.get(var)
        if name and name != "root":
            yield name


def get_real_home() -> Path:
    """Home directory of the user who started the relay.

    Tries SUDO_USER, then LOGNAME/USER, then the password entry for the
    effective uid, and finally Path.home().
    """
    for name in _candidate_users():
        try:
            return Path(pwd.getpwnam(name).pw_dir)
        except KeyError:
            continue
    try:
        entry = pwd.getpwuid(os.getuid())
    except KeyError:
        entry = None
    if entry is not None and entry.pw_dir and entry.pw_name != "root":
        return Path(entry.pw_dir)
    return Path.home()


def get_app_dir(kind: str) -> Path:
    """Per-user directory of *kind* ("config" or "cache") for the relay.

    Raises ValueError for an unknown kind.
    """
    try:
        env_var, default = _APP_DIRS[kind]
    except KeyError:
        raise ValueError(f"unknown directory kind: {kind!r}") from None
    base = os.environ.get(env_var)
    root = Path(base) if base else get_real_home() / default
    return root / APP_DIR_NAME
