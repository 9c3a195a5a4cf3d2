from setuptools import find_packages, setup

from decache import __version__

setup(
    name="decache",
    version=__version__,
    description="Extract standalone Mach-O images from a dyld_shared_cache",
    author="Data Theorem",
    packages=find_packages(exclude=["tests"]),
    install_requires=["more_itertools"],
    extras_require={"test": ["pytest"], "dev": ["invoke", "mypy", "black", "isort", "flake8", "autoflake"]},
    package_data={"decache": ["py.typed"]},
    scripts=["decache-cli.py"],
)
