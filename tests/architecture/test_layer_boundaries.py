"""
Import-boundary enforcement for the guardian packages.

1. Engine purity      -- guardian_engines/** may not import DB, ORM, models,
                         services, config or batch layers.
2. Engine no-impure   -- guardian_engines/** may not call wall-clock or
                         environment functions.
3. Kernel boundary    -- guardian_kernel/** may not import engines, config,
                         services or batch.
4. Domain purity      -- guardian_kernel/domain/** may not import sqlalchemy
                         or kernel db/models/services.
5. Dependency direction -- kernel <- engines <- config <- services <- batch.

All scanning is done via AST -- these tests are read-only.
"""

import ast
import glob
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _python_files(package: str) -> list[str]:
    """Return all .py files under *package*, sorted for deterministic order."""
    return sorted(glob.glob(f"{ROOT / package}/**/*.py", recursive=True))


def _extract_imports(filepath: str) -> list[tuple[int, str]]:
    """Return (line_number, module_string) for every import in *filepath*."""
    try:
        source = Path(filepath).read_text()
        tree = ast.parse(source, filename=filepath)
    except (SyntaxError, UnicodeDecodeError):
        return []

    results: list[tuple[int, str]] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                results.append((node.lineno, alias.name))
        elif isinstance(node, ast.ImportFrom):
            if node.module:
                results.append((node.lineno, node.module))
    return results


def _matches_any(module: str, prefixes: tuple[str, ...]) -> bool:
    """True if *module* equals or is a child of any prefix."""
    for prefix in prefixes:
        if module == prefix or module.startswith(f"{prefix}."):
            return True
    return False


def _extract_attribute_calls(filepath: str) -> list[tuple[int, str]]:
    """Return (line_number, 'receiver.attr') for two-level attribute references."""
    try:
        source = Path(filepath).read_text()
        tree = ast.parse(source, filename=filepath)
    except (SyntaxError, UnicodeDecodeError):
        return []

    results: list[tuple[int, str]] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute) and isinstance(node.value, ast.Name):
            results.append((node.lineno, f"{node.value.id}.{node.attr}"))
    return results


def _violations(package: str, forbidden: tuple[str, ...]) -> list[str]:
    found: list[str] = []
    for filepath in _python_files(package):
        for lineno, module in _extract_imports(filepath):
            if _matches_any(module, forbidden):
                found.append(f"  {filepath}:{lineno} imports '{module}'")
    return found


# ---------------------------------------------------------------------------
# 1. TestEnginePurity
# ---------------------------------------------------------------------------

class TestEnginePurity:
    """guardian_engines/** may not import DB drivers, ORM, kernel models/db,
    kernel services, config, services or batch."""

    FORBIDDEN_PREFIXES = (
        "sqlalchemy",
        "psycopg2",
        "sqlite3",
        "guardian_kernel.models",
        "guardian_kernel.db",
        "guardian_kernel.services",
        "guardian_config",
        "guardian_services",
        "guardian_batch",
    )

    def test_engine_files_exist(self):
        assert _python_files("guardian_engines")

    def test_engine_files_have_no_forbidden_imports(self):
        violations = _violations("guardian_engines", self.FORBIDDEN_PREFIXES)
        assert not violations, (
            "Engine purity violation -- guardian_engines/** must not import "
            "DB drivers, ORM, kernel models/db/services, config, services or "
            "batch:\n" + "\n".join(violations)
        )


# ---------------------------------------------------------------------------
# 2. TestEngineNoImpureFunctions
# ---------------------------------------------------------------------------

class TestEngineNoImpureFunctions:
    """guardian_engines/** may not call wall-clock or environment functions."""

    FORBIDDEN_CALLS = frozenset({
        "datetime.now",
        "datetime.utcnow",
        "date.today",
        "time.time",
        "time.sleep",
        "os.environ",
        "os.getenv",
    })

    def test_no_impure_calls_in_engines(self):
        violations: list[str] = []
        for filepath in _python_files("guardian_engines"):
            for lineno, qualname in _extract_attribute_calls(filepath):
                if qualname in self.FORBIDDEN_CALLS:
                    violations.append(f"  {filepath}:{lineno} calls '{qualname}'")

        assert not violations, (
            "Engine impurity violation -- pass timestamps in from the "
            "services' Clock instead:\n" + "\n".join(violations)
        )


# ---------------------------------------------------------------------------
# 3. TestKernelBoundary
# ---------------------------------------------------------------------------

class TestKernelBoundary:
    """guardian_kernel/** never imports a higher layer."""

    FORBIDDEN_PREFIXES = (
        "guardian_engines",
        "guardian_config",
        "guardian_services",
        "guardian_batch",
    )

    def test_kernel_does_not_import_upward(self):
        violations = _violations("guardian_kernel", self.FORBIDDEN_PREFIXES)
        assert not violations, (
            "Kernel boundary violation:\n" + "\n".join(violations)
        )


# ---------------------------------------------------------------------------
# 4. TestDomainPurity
# ---------------------------------------------------------------------------

class TestDomainPurity:
    """guardian_kernel/domain/** is pure: no ORM, no db, no services."""

    FORBIDDEN_PREFIXES = (
        "sqlalchemy",
        "guardian_kernel.db",
        "guardian_kernel.models",
        "guardian_kernel.services",
    )

    def test_domain_has_no_io_imports(self):
        violations = _violations("guardian_kernel/domain", self.FORBIDDEN_PREFIXES)
        assert not violations, (
            "Domain purity violation:\n" + "\n".join(violations)
        )


# ---------------------------------------------------------------------------
# 5. TestDependencyDirection
# ---------------------------------------------------------------------------

class TestDependencyDirection:
    """Every package imports only itself and the layers below it."""

    LAYERS = (
        "guardian_kernel",
        "guardian_engines",
        "guardian_config",
        "guardian_services",
        "guardian_batch",
    )

    def test_no_upward_imports(self):
        violations: list[str] = []
        for index, package in enumerate(self.LAYERS):
            higher = self.LAYERS[index + 1:]
            if higher:
                violations.extend(_violations(package, higher))
        assert not violations, (
            "Dependency direction violation (kernel <- engines <- config <- "
            "services <- batch):\n" + "\n".join(violations)
        )

    def test_config_does_not_import_engines(self):
        violations = _violations("guardian_config", ("guardian_engines",))
        assert not violations, "\n".join(violations)
