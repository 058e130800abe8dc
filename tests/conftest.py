"""
Shared fixtures for the deployment tests.
"""
import pytest


@pytest.fixture
def lambda_source(tmp_path):
    """A function source directory laid out the way config.yaml expects."""
    source_dir = tmp_path / "lambdas" / "hello"
    source_dir.mkdir(parents=True)
    (source_dir / "handler.py").write_text("def handler(event, context):\n    return {'ok': True}\n")
    (source_dir / "requirements.txt").write_text("requests>=2.31\n")
    (source_dir / "Makefile").write_text("help:\n\t@echo help\n")
    return source_dir


@pytest.fixture
def config_data():
    return {
        "team": "Platform",
        "service": "lambdas",
        "environment": "dev",
        "region": "us-east-1",
        "tags": {"Team": "platform"},
        "lambdas": [
            {
                "name": "hello",
                "source_dir": "lambdas/hello",
                "handler": "handler.handler",
            }
        ],
    }
