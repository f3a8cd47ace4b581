"""Test bootstrap for scenario-engine."""

from __future__ import annotations

import sys
import textwrap
from pathlib import Path

import pytest

APPS_DIR = Path(__file__).resolve().parents[2]
for package in ["scenario-engine"]:
    package_root = APPS_DIR / package
    path_str = str(package_root)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)


FAKE_BINARY = """\
#!{python}
import sys
import time

raw = sys.argv[1] if len(sys.argv) > 1 else ""
args = dict(pair.split("=", 1) for pair in raw.split(";") if "=" in pair)

if "sleep" in args:
    time.sleep(float(args["sleep"]))

command = args.get("cmd", "")
if command == "login":
    print("RESULT=" + args.get("result", "0"))
    print("SESSION_ID=sess-" + args.get("user", "anon"))
    print("SERVERINFO=fake-server 1.0")
elif command == "query":
    print("RESULT=0")
    print("SESSION=" + args.get("session", ""))
    print("ROWS=3")
else:
    for key, value in args.items():
        print(key.upper() + "=" + value)

if args.get("stderr"):
    sys.stderr.write(args["stderr"] + "\\n")
sys.exit(int(args.get("exit", "0")))
"""


@pytest.fixture
def fake_binary(tmp_path: Path) -> Path:
    """Executable that answers ``key=value;...`` with ``KEY=value`` lines."""

    path = tmp_path / "fake-binary"
    path.write_text(textwrap.dedent(FAKE_BINARY).format(python=sys.executable), encoding="utf-8")
    path.chmod(0o755)
    return path
