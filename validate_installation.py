#!/usr/bin/env python3
"""
Validation script for Squadron Sync.

This script validates that all dependencies are installed correctly
and that the core modules import and behave as expected.
"""

import sys
import importlib


def check_dependency(package_name, import_name=None):
    """Check if a package/module can be imported."""
    if import_name is None:
        import_name = package_name

    try:
        importlib.import_module(import_name)
        return True, f"✓ {package_name} available"
    except ImportError as e:
        return False, f"✗ {package_name} missing: {e}"


def validate_dependencies():
    """Validate all required dependencies."""
    print("=== Dependency Validation ===")

    dependencies = [
        ("PyYAML", "yaml"),
    ]

    optional_dependencies = [
        ("pytest (tests)", "pytest"),
    ]

    all_ok = True
    for pkg_name, import_name in dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")
        if not ok:
            all_ok = False

    print("\n  Optional dependencies:")
    for pkg_name, import_name in optional_dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")

    return all_ok


def validate_core_modules():
    """Validate core application modules."""
    print("\n=== Core Module Validation ===")

    modules = [
        "squadron_sync.models",
        "squadron_sync.lifecycle",
        "squadron_sync.retry",
        "squadron_sync.orchestrator",
        "squadron_sync.groups",
        "squadron_sync.checkpoint",
        "squadron_sync.registry",
        "squadron_sync.config",
        "squadron_sync.notifications",
        "squadron_sync.directory.workspace",
        "squadron_sync.main",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_dependency(module, module)
        print(f"  {message}")
        if not ok:
            all_ok = False

    return all_ok


def validate_functionality():
    """Validate key functionality without touching the network."""
    print("\n=== Functionality Validation ===")

    try:
        from squadron_sync.lifecycle import Action, decide
        from squadron_sync.models import AccountStatus, RegistryStatus
        assert decide(RegistryStatus.EXPIRED, AccountStatus.ACTIVE, 7) is Action.SUSPEND
        assert decide(RegistryStatus.ACTIVE, AccountStatus.DELETED, 0) is Action.NONE
        print("  ✓ Lifecycle decisions")

        from squadron_sync.clock import Clock
        from squadron_sync.retry import RetryExecutor, Success
        executor = RetryExecutor(Clock(), inter_call_delay_seconds=0)
        assert isinstance(executor.execute(lambda: Success('ok'), 'validate'), Success)
        print("  ✓ Retry executor")

        from squadron_sync.config import DEFAULT_GROUP_TEMPLATES, parse_group_template
        templates = [parse_group_template(t) for t in DEFAULT_GROUP_TEMPLATES]
        print(f"  ✓ {len(templates)} default group templates")

        from squadron_sync.main import SyncRunner
        health = SyncRunner().health_check()
        print(f"  ✓ Health check system (status: {health['status']})")

        return True

    except Exception as e:
        print(f"  ✗ Functionality test failed: {e}")
        return False


def validate_cli():
    """Validate command-line interface."""
    print("\n=== CLI Validation ===")

    try:
        import subprocess

        result = subprocess.run([sys.executable, "-m", "squadron_sync.main", "--help"],
                                capture_output=True, text=True)
        if result.returncode == 0:
            print("  ✓ Help command working")
            return True
        print("  ✗ Help command failed")
        return False

    except Exception as e:
        print(f"  ✗ CLI validation failed: {e}")
        return False


def main():
    """Run all validations."""
    print("Squadron Sync - Installation Validation")
    print("=" * 50)

    all_validations = [
        validate_dependencies(),
        validate_core_modules(),
        validate_functionality(),
        validate_cli(),
    ]

    print("\n=== Summary ===")
    if all(all_validations):
        print("✓ All validations passed!")
        print("\nNext steps:")
        print("  1. Copy config.example.yaml to config.yaml and fill in the directory settings")
        print("  2. Test with: python -m squadron_sync.main --health-check")
        print("  3. Test email with: python -m squadron_sync.main --test-email")
        print("  4. Preview changes: python -m squadron_sync.main --dry-run")
        print("  5. Run sync: python -m squadron_sync.main")
        return 0
    else:
        print("✗ Some validations failed!")
        print("Please resolve the issues above before using the application.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
