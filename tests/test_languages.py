"""Tests for static language tables and package detection."""

from __future__ import annotations

from runbox.container_config import detect_packages, get_extension, get_static_config
from runbox.container_config._languages import generic_config, package_install_command


class TestDetectPackages:
    def test_python_excludes_stdlib(self):
        code = "import os\nimport requests\nfrom numpy import array\nfrom json import dumps\n"
        assert detect_packages(code, "python") == ["requests", "numpy"]

    def test_javascript_require_and_import(self):
        code = (
            "const fs = require('fs');\n"
            "const _ = require('lodash/fp');\n"
            "import express from 'express';\n"
            "import local from './local';\n"
        )
        assert detect_packages(code, "javascript") == ["express", "lodash"]

    def test_scoped_packages_keep_scope(self):
        code = "import { Client } from '@org/sdk/client';\nimport t from '@types/node';\n"
        assert detect_packages(code, "typescript") == ["@org/sdk"]

    def test_duplicates_collapse(self):
        assert detect_packages("import yaml\nimport yaml\n", "python") == ["yaml"]

    def test_unknown_language_finds_nothing(self):
        assert detect_packages("use strict;", "cobol") == []


def test_static_config_and_extension():
    cfg = get_static_config("python")
    assert cfg is not None
    assert cfg.base_image == "python:3.11-alpine"
    assert cfg.run_command == ("python", "/app/code.py")
    assert get_extension("python") == ".py"
    assert get_static_config("cobol") is None
    assert get_extension("cobol") == ".cobol"


def test_generic_config_for_unknown_language():
    cfg = generic_config("zig")
    assert cfg.base_image == "zig:latest"
    assert cfg.run_command == ("zig", "/app/code.zig")


def test_package_install_commands():
    assert package_install_command("python", ["requests"]) == "pip install --no-cache-dir requests"
    assert package_install_command("javascript", ["a", "b"]) == "npm install a b"
    assert package_install_command("ruby", ["rails"]) == "gem install rails"
    assert package_install_command("go", ["x"]) is None
    assert package_install_command("python", []) is None
