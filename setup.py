# Stub file to call setuptools.setup; metadata lives in pyproject.toml
from setuptools import setup

setup()
