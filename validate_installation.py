#!/usr/bin/env python3
"""
Validation script for PG LDAP Sync.

Checks that dependencies import, that the package modules load and that the
offline parts of the sync (policy, planning, configuration) behave. It never
contacts LDAP or PostgreSQL unless --health-check is requested.
"""

import os
import sys
import json
import tempfile
import importlib
import subprocess

import yaml


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
        ("ldap3", "ldap3"),
        ("PyYAML", "yaml"),
        ("psycopg2", "psycopg2"),
    ]

    test_dependencies = [
        ("pytest", "pytest"),
        ("pytest-mock", "pytest_mock"),
    ]

    all_ok = True
    for pkg_name, import_name in dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")
        if not ok:
            all_ok = False

    print("\n  Test dependencies:")
    for pkg_name, import_name in test_dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")

    return all_ok


def validate_core_modules():
    """Validate core application modules."""
    print("\n=== Core Module Validation ===")

    modules = [
        "pg_ldap_sync.config",
        "pg_ldap_sync.logging_setup",
        "pg_ldap_sync.ldap_client",
        "pg_ldap_sync.resolver",
        "pg_ldap_sync.policy",
        "pg_ldap_sync.postgres_client",
        "pg_ldap_sync.reconciler",
        "pg_ldap_sync.notifications",
        "pg_ldap_sync.main",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_dependency(module, module)
        print(f"  {message}")
        if not ok:
            all_ok = False

    return all_ok


def validate_functionality():
    """Validate the parts of the sync that need no server."""
    print("\n=== Functionality Validation ===")

    sample_config = {
        'ldap': {
            'server_url': 'ldap://localhost',
            'bind_dn': 'cn=admin,dc=example,dc=com',
            'bind_password': 'validate',
            'group_search_base': 'ou=groups,dc=example,dc=com'
        },
        'sync_policy': {'allowed_user_prefixes': ['nc_'], 'default_postgres_group': 'g_ldapusers'},
        'databases': [{
            'alias': 'validate',
            'postgres': {'host': 'localhost', 'user': 'postgres', 'dbname': 'postgres'},
            'roles': [{'postgres_role': 'ldap_db_admins', 'ldap_group_cn': 'db-admins'}]
        }]
    }

    config_file = None
    try:
        from pg_ldap_sync.config import load_config
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yml', delete=False) as f:
            yaml.safe_dump(sample_config, f)
            config_file = f.name
        config = load_config(config_file)
        assert config['timeouts']['provisioning'] == 60
        print("  ✓ Configuration loading")

        from pg_ldap_sync.policy import SyncPolicy
        policy = SyncPolicy.from_config(config['sync_policy'])
        assert policy.filter(['nc_alice', 'postgres']) == frozenset({'nc_alice'})
        assert policy.like_patterns() == ['nc\\_%']
        print("  ✓ Sync policy")

        from pg_ldap_sync.reconciler import plan_membership, plan_deprovisioning
        plan = plan_membership({'nc_a', 'nc_b'}, {'nc_b', 'nc_c'})
        assert plan.to_grant == frozenset({'nc_a'}) and plan.to_revoke == frozenset({'nc_c'})
        assert plan_deprovisioning({'nc_a', 'nc_c'}, {'nc_a'}) == frozenset({'nc_c'})
        print("  ✓ Reconciliation planning")

        from pg_ldap_sync.logging_setup import SensitiveDataFilter
        print("  ✓ Logging system")

        from pg_ldap_sync.notifications import send_email, send_failure_notification
        print("  ✓ Notification system")

        return True

    except Exception as e:
        print(f"  ✗ Functionality test failed: {e}")
        return False
    finally:
        if config_file:
            os.unlink(config_file)


def validate_cli(run_health_check=False):
    """Validate command-line interface."""
    print("\n=== CLI Validation ===")

    try:
        result = subprocess.run([sys.executable, "-m", "pg_ldap_sync.main", "--help"],
                                capture_output=True, text=True)
        if result.returncode == 0:
            print("  ✓ Help command working")
        else:
            print("  ✗ Help command failed")
            return False

        if not run_health_check:
            return True

        # Uses the real configuration and contacts LDAP and every database
        result = subprocess.run([sys.executable, "-m", "pg_ldap_sync.main", "--health-check"],
                                capture_output=True, text=True)
        try:
            health_data = json.loads(result.stdout)
        except json.JSONDecodeError:
            print("  ✗ Health check didn't return valid JSON")
            return False

        for name, check in health_data.get('checks', {}).items():
            print(f"    {name}: {check}")
        if result.returncode == 0:
            print("  ✓ Health check passed")
        else:
            print(f"  ✗ Health check reported status '{health_data.get('status')}'")
        return result.returncode == 0

    except OSError as e:
        print(f"  ✗ CLI validation failed: {e}")
        return False


def main():
    """Run all validations."""
    print("PG LDAP Sync - Installation Validation")
    print("=" * 50)

    all_validations = [
        validate_dependencies(),
        validate_core_modules(),
        validate_functionality(),
        validate_cli(run_health_check='--health-check' in sys.argv),
    ]

    print("\n=== Summary ===")
    if all(all_validations):
        print("✓ All validations passed!")
        print("✓ PG LDAP Sync is ready for use")
        print("\nNext steps:")
        print("  1. Configure LDAP, sync_policy and databases in config.yml (see config.example.yml)")
        print("  2. Test with: pg-ldap-sync --config config.yml --health-check")
        print("  3. Test email with: pg-ldap-sync --config config.yml --test-email")
        print("  4. Run sync: pg-ldap-sync --config config.yml")
        return 0
    else:
        print("✗ Some validations failed!")
        print("Please resolve the issues above before using the application.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
