#!/usr/bin/env python3
"""
Validation script for Identity Sync.

Checks that the dependencies are installed, that every module imports and
that the command line entry point answers with the documented exit codes.
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
    print("=== Dependency Validation ===")

    dependencies = [
        ("ldap3", "ldap3"),
        ("PyYAML", "yaml"),
        ("cryptography", "cryptography"),
        ("pytest", "pytest"),
        ("pytest-mock", "pytest_mock"),
    ]

    all_ok = True
    for pkg_name, import_name in dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")
        all_ok = all_ok and ok
    return all_ok


def validate_core_modules():
    print("\n=== Core Module Validation ===")

    modules = [
        "identity_sync.config",
        "identity_sync.secrets",
        "identity_sync.roster",
        "identity_sync.engine",
        "identity_sync.clean",
        "identity_sync.main",
        "identity_sync.notifications",
        "identity_sync.retry",
        "identity_sync.adapters.base",
        "identity_sync.adapters.identity_provider",
        "identity_sync.adapters.business_app",
        "identity_sync.adapters.content_share",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_dependency(module, module)
        print(f"  {message}")
        all_ok = all_ok and ok
    return all_ok


def validate_functionality():
    print("\n=== Functionality Validation ===")

    try:
        from identity_sync.roster import convert_manager_dn_to_email, Person
        email = convert_manager_dn_to_email("cn=Jane_Doe,l=amer,dc=example,dc=com")
        if email != "jane.doe@example.com":
            raise ValueError(f"unexpected manager email {email}")
        print("  ✓ Manager DN conversion")

        person = Person.from_roster_entry({'id': 'a@example.com', 'num_directs': 2})
        if person.role != 'Manager':
            raise ValueError("direct reports did not yield the Manager role")
        print("  ✓ Roster record parsing")

        from identity_sync.adapters.base import render_template
        payload = render_template('{"name": "%USERNAME%"}', {'USERNAME': 'a"b'})
        if payload != '{"name": "a\\"b"}':
            raise ValueError(f"unexpected payload {payload}")
        print("  ✓ Payload templates")

        from identity_sync.retry import retry_call
        retry_call(lambda: "test", max_attempts=1, delay=0)
        print("  ✓ Retry mechanism")

        return True

    except Exception as e:
        print(f"  ✗ Functionality test failed: {e}")
        return False


def validate_cli():
    print("\n=== CLI Validation ===")

    try:
        import subprocess

        checks = [(["--help"], 1, "Help command"), ([], 3, "Missing mode"), (["--bogus"], 3, "Unknown argument")]
        for args, expected, label in checks:
            result = subprocess.run([sys.executable, "-m", "identity_sync.main"] + args,
                                    capture_output=True, text=True)
            if result.returncode != expected:
                print(f"  ✗ {label} returned {result.returncode}, expected {expected}")
                return False
            print(f"  ✓ {label} exits {expected}")

        return True

    except Exception as e:
        print(f"  ✗ CLI validation failed: {e}")
        return False


def main():
    print("Identity Sync - Installation Validation")
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
        print("  1. Copy config.example.yaml to config.yaml and fill in endpoints")
        print("  2. Dry run: python -m identity_sync.main --list")
        print("  3. Synchronize: python -m identity_sync.main --add")
        return 0

    print("✗ Some validations failed!")
    print("Please resolve the issues above before using the application.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
