"""
Invoke tasks for the server.
"""

import shutil
import sys
from pathlib import Path

from invoke import task


@task
def test(c, keyword=None):
    """Run the server test suite (pytest).

    Args:
        keyword: Only run tests matching this pytest -k expression
    """
    server_dir = Path(__file__).parent
    with c.cd(str(server_dir)):
        cmd = f"{sys.executable} -m pytest"
        if keyword:
            cmd += f' -k "{keyword}"'
        c.run(cmd)


@task
def start(c, config=None, port=None, log_level="INFO"):
    """Start the Aurora server.

    Args:
        config: Path to config file
        port: Port override
        log_level: DEBUG, INFO, WARNING or ERROR
    """
    server_dir = Path(__file__).parent
    # Unbuffered so server logs stream immediately under invoke.
    cmd_parts = [sys.executable, "-u", "-m", "aurora_server", "--log-level", log_level]
    if config:
        cmd_parts += ["--config", f'"{config}"']
    if port:
        cmd_parts += ["--port", str(port)]

    print(f"Starting server from {server_dir}...")
    with c.cd(str(server_dir)):
        c.run(" ".join(cmd_parts), env={"PYTHONUNBUFFERED": "1"})


@task
def clean(c):
    """Remove local build artifacts (dist/, build/, *.egg-info/)."""
    server_dir = Path(__file__).parent
    for p in [server_dir / "dist", server_dir / "build"]:
        if p.exists():
            shutil.rmtree(p, ignore_errors=True)
    for p in list(server_dir.glob("*.egg-info")) + list((server_dir / "src").glob("*.egg-info")):
        shutil.rmtree(p, ignore_errors=True)


@task(pre=[clean])
def build(c):
    """Build the pip distribution (sdist + wheel). Requires: `pip install build`."""
    server_dir = Path(__file__).parent
    version_file = server_dir / "VERSION"
    if not version_file.exists():
        raise FileNotFoundError("VERSION file not found")

    version = version_file.read_text(encoding="utf-8").strip()
    if not version:
        raise ValueError("VERSION file is empty")

    init_text = (server_dir / "src" / "aurora_server" / "__init__.py").read_text(encoding="utf-8")
    if f'__version__ = "{version}"' not in init_text:
        raise ValueError(f"aurora_server.__version__ does not match VERSION ({version})")

    with c.cd(str(server_dir)):
        c.run(f"{sys.executable} -m build")


@task(pre=[build])
def publish(c, repository="pypi"):
    """Publish the pip distribution using twine. Requires: `pip install twine`.

    Args:
        repository: Twine repository name (default: pypi). Common values: pypi, testpypi.
    """
    server_dir = Path(__file__).parent
    with c.cd(str(server_dir)):
        c.run(f"{sys.executable} -m twine upload --repository {repository} dist/*")
