#!/usr/bin/env python3
"""Check that .env.example and src/ticketflow/config.py are in sync.

Every key documented in .env.example must be read by the config loader, and
every key the loader reads must be documented. Keys are found with AST
parsing: string literals passed to ``data.get()`` or to the typed getters
(``get_str``, ``get_int``, ...) inside the loader functions.

Usage:
    python scripts/check_config_sync.py

Exit codes:
    0 - Config is in sync (no mismatches)
    1 - Config drift detected (mismatches found)
"""

import ast
import re
import sys
from pathlib import Path

# Matches "KEY=" and "# KEY=" lines
ENV_LINE_RE = re.compile(r"^#?\s*([A-Z][A-Z0-9_]*)=")


def extract_env_example_vars(path: Path) -> set[str]:
    """Extract variable names from .env.example.

    Both active lines (GITEA_TOKEN=) and commented examples (# LOG_LEVEL=INFO)
    count as documented.
    """
    vars_found = set()
    for line in path.read_text().splitlines():
        match = ENV_LINE_RE.match(line.strip())
        if match:
            vars_found.add(match.group(1))
    return vars_found


class ConfigVarVisitor(ast.NodeVisitor):
    """Collects config keys read inside the loader functions."""

    LOADER_FUNCTIONS = {"build_config", "load_config_from_file"}
    GETTERS = {"get_str", "get_optional", "get_int", "get_float", "get_bool"}

    def __init__(self):
        self.vars_found: set[str] = set()
        self._depth = 0

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        inside = node.name in self.LOADER_FUNCTIONS
        if inside:
            self._depth += 1
        self.generic_visit(node)
        if inside:
            self._depth -= 1

    def visit_Call(self, node: ast.Call) -> None:
        if self._depth and node.args and isinstance(node.args[0], ast.Constant):
            key = node.args[0].value
            func = node.func
            is_data_get = (
                isinstance(func, ast.Attribute)
                and func.attr == "get"
                and isinstance(func.value, ast.Name)
                and func.value.id == "data"
            )
            is_getter = isinstance(func, ast.Name) and func.id in self.GETTERS
            if (is_data_get or is_getter) and isinstance(key, str):
                self.vars_found.add(key)
        self.generic_visit(node)


def extract_config_py_vars(path: Path) -> set[str]:
    """Extract the keys read by the loaders in config.py."""
    visitor = ConfigVarVisitor()
    visitor.visit(ast.parse(path.read_text()))
    return visitor.vars_found


def main() -> int:
    """Main entry point for config sync check.

    Returns:
        0 if configs are in sync, 1 if mismatches found
    """
    project_root = Path(__file__).parent.parent
    env_example_path = project_root / ".env.example"
    config_py_path = project_root / "src" / "ticketflow" / "config.py"

    for path in (env_example_path, config_py_path):
        if not path.exists():
            print(f"ERROR: {path} not found")
            return 1

    env_vars = extract_env_example_vars(env_example_path)
    config_vars = extract_config_py_vars(config_py_path)

    documented_not_implemented = env_vars - config_vars
    implemented_not_documented = config_vars - env_vars

    if documented_not_implemented:
        print("ERROR: Variables documented in .env.example but NOT used in config.py:")
        for var in sorted(documented_not_implemented):
            print(f"  - {var}")
        print()

    if implemented_not_documented:
        print("ERROR: Variables used in config.py but NOT documented in .env.example:")
        for var in sorted(implemented_not_documented):
            print(f"  - {var}")
        print()

    if documented_not_implemented or implemented_not_documented:
        print("Config sync check FAILED")
        return 1

    print(f"Config sync check PASSED ({len(env_vars)} variables in sync)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
