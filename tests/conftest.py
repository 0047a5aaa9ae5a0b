"""Pytest configuration and fixtures for rsnap tests."""

import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List

import pytest
from hypothesis import settings, Phase

from rsnap.layout import FIXED_PREFIX, name_for, provisional_name
from rsnap.logger import LOGGER_NAME

# Configure hypothesis to use fewer examples for faster test runs
# Disable shrinking phase to speed up tests further
settings.register_profile(
    "fast",
    max_examples=2,
    deadline=10000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate]
)
settings.register_profile("ci", max_examples=50, deadline=10000)
settings.register_profile("dev", max_examples=2, deadline=10000)

# Use the fast profile by default
settings.load_profile("fast")


# Stand-in for rsync: copies the source tree, hard-links files that are
# identical in --link-dest, prints a --stats style summary.
# FAKE_RSYNC_EXIT makes it stop after the first directory and fail,
# FAKE_RSYNC_SIGNAL makes it kill itself with that signal,
# FAKE_RSYNC_SLEEP delays it, FAKE_RSYNC_ARGS_LOG records its arguments.
FAKE_RSYNC_SCRIPT = '''#!@PYTHON@
import filecmp
import os
import shutil
import sys
import time

args = sys.argv[1:]
args_log = os.environ.get("FAKE_RSYNC_ARGS_LOG")
if args_log:
    with open(args_log, "a") as f:
        f.write("\\t".join(args) + "\\n")

link_dest = None
positional = []
for arg in args:
    if arg.startswith("--link-dest="):
        link_dest = arg.split("=", 1)[1]
    elif not arg.startswith("-"):
        positional.append(arg)
source, dest = positional[-2], positional[-1]

exit_code = int(os.environ.get("FAKE_RSYNC_EXIT", "0"))
kill_signal = int(os.environ.get("FAKE_RSYNC_SIGNAL", "0"))
if kill_signal:
    os.kill(os.getpid(), kill_signal)
time.sleep(float(os.environ.get("FAKE_RSYNC_SLEEP", "0")))

files = dirs = transferred = sent = 0
for root, dirnames, filenames in os.walk(source):
    dirnames.sort()
    rel = os.path.relpath(root, source)
    target_root = os.path.normpath(os.path.join(dest, rel))
    os.makedirs(target_root, exist_ok=True)
    dirs += 1
    for name in sorted(filenames):
        src = os.path.join(root, name)
        dst = os.path.join(target_root, name)
        files += 1
        ref = os.path.normpath(os.path.join(link_dest, rel, name)) if link_dest else None
        if ref and os.path.isfile(ref) and filecmp.cmp(src, ref, shallow=False):
            os.link(ref, dst)
        else:
            shutil.copy2(src, dst)
            transferred += 1
            sent += os.path.getsize(src)
    if exit_code:
        break

print(f"Number of files: {files + dirs} (reg: {files}, dir: {dirs})")
print(f"Number of regular files transferred: {transferred}")
print(f"sent {sent} bytes  received 0 bytes  0.00 bytes/sec")
sys.stdout.flush()
if exit_code:
    print("rsync error: simulated failure", file=sys.stderr)
sys.exit(exit_code)
'''


@pytest.fixture(autouse=True)
def cleanup_logger():
    """Remove handlers setup_logging installed; they hold captured streams."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def fake_rsync(tmp_path_factory) -> Path:
    """Executable fake rsync; its path goes into rsync_path."""
    path = tmp_path_factory.mktemp("bin") / "rsync"
    path.write_text(FAKE_RSYNC_SCRIPT.replace("@PYTHON@", sys.executable))
    path.chmod(0o755)
    return path


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    """A small directory tree to back up."""
    source = tmp_path / "source"
    (source / "docs").mkdir(parents=True)
    (source / "README.md").write_text("hello\n")
    (source / "docs" / "notes.txt").write_text("some notes\n")
    (source / "docs" / "todo.txt").write_text("nothing\n")
    return source


@pytest.fixture
def destination(tmp_path: Path) -> Path:
    dest = tmp_path / "dest"
    dest.mkdir()
    return dest


@pytest.fixture
def clock() -> Callable[[], datetime]:
    """Returns 2025-01-01 12:00:00, one minute later on each call."""
    start = datetime(2025, 1, 1, 12, 0, 0)
    calls = []

    def now() -> datetime:
        calls.append(None)
        return start + timedelta(minutes=len(calls) - 1)

    return now


def make_vault(
    destination: Path,
    vault: str,
    chains: List[List[str]],
) -> Path:
    """
    Build a vault on disk.

    Each chain is a list of snapshot states, "c" (complete) or "p"
    (provisional); the first snapshot of a chain names the chain.
    Chains are one day apart, snapshots one hour apart.

    Returns:
        The vault root
    """
    vault_root = destination / FIXED_PREFIX / vault
    vault_root.mkdir(parents=True, exist_ok=True)
    for chain_index, states in enumerate(chains):
        chain_ts = datetime(2024, 1, 1) + timedelta(days=chain_index)
        chain_dir = vault_root / name_for(chain_ts)
        chain_dir.mkdir()
        for snap_index, state in enumerate(states):
            name = name_for(chain_ts + timedelta(hours=snap_index))
            if state == "p":
                name = provisional_name(name)
            (chain_dir / name).mkdir()
            (chain_dir / name / "file.txt").write_text(f"{chain_index}-{snap_index}\n")
    return vault_root
