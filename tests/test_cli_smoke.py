import subprocess
import sys


def test_cli_help() -> None:
    cp = subprocess.run(
        [sys.executable, "-m", "megamap", "--help"],
        check=True,
        capture_output=True,
        text=True,
    )
    assert "megamap" in cp.stdout.lower()
    for cmd in ("run", "stages", "make-toy-data", "doctor"):
        assert cmd in cp.stdout
