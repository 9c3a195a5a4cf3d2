import pathlib
from pkgutil import iter_modules
from typing import List

from invoke import Context, task

_ROOT = pathlib.Path(__file__).parent


def _get_python_files() -> List[str]:
    modules_in_dir = iter_modules([_ROOT.as_posix()])
    # The CLI's name isn't a valid module name, so iter_modules skips it
    return [m.name if m.ispkg else m.name + ".py" for m in modules_in_dir] + ["decache-cli.py"]


@task
def install(ctx):
    # type: (Context) -> None
    ctx.run("pip install -e .[test]")


@task
def test(ctx):
    # type: (Context) -> None
    ctx.run("mypy decache decache-cli.py")
    ctx.run("pytest tests")


@task(help={"cache": "Path to a dyld_shared_cache", "image": "Path of an embedded image to extract"})
def extract(ctx, cache, image, output="extracted.dylib"):
    # type: (Context, str, str, str) -> None
    """Extract one image from a cache with verbose logging."""
    ctx.run(f"python decache-cli.py -v {cache} {image} {output}")


@task
def autoformat_lint(ctx):
    # type: (Context) -> None
    """Check formatting of the code."""
    files_to_process = " ".join(_get_python_files())

    print("Checking imports optimization")
    ctx.run(f"autoflake --recursive {files_to_process}")

    print("Checking imports sorting")
    ctx.run(f"isort --check --diff {files_to_process}")

    print("Checking black format")
    ctx.run(f"black --line-length 120 --check --diff {files_to_process}")

    print("Checking format")
    ctx.run(f"flake8 --max-line-length 120 {files_to_process}")


@task
def autoformat(ctx):
    # type: (Context) -> None
    """Run auto-formatting tools."""
    files_to_process = " ".join(_get_python_files())

    ctx.run(f"autoflake --in-place --recursive {files_to_process}")
    ctx.run(f"isort {files_to_process}")
    ctx.run(f"black --line-length 120 {files_to_process}")
