import pytest
import importlib

def test_imports():
    """Verify that critical modules can be imported without error."""
    modules_to_test = [
        "main",
        "core",
        "core.orchestrator",
        "loaders",
    ]

    for module_name in modules_to_test:
        try:
            importlib.import_module(module_name)
        except Exception as e:
            pytest.fail(f"Failed to import {module_name}: {e}")


def test_cli_help(capsys):
    """The CLI prints help and exits non-zero without a command."""
    main = importlib.import_module("main")
    assert main.main([]) == 1
    assert "load-policies" in capsys.readouterr().out
