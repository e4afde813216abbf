#!/usr/bin/env python3
"""
Database Initialization Script

Run this script to set up the database for Certify Batch.
"""

import os
import sys
import argparse
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from sqlalchemy import inspect
from certify.database.connection import init_database, get_database_manager, DatabaseConfig
from certify.database.models import Base

EXPECTED_TABLES = sorted(Base.metadata.tables.keys())


def setup_database(drop_existing: bool = False) -> bool:
    """
    Set up the database tables

    Args:
        drop_existing: Whether to drop existing tables first

    Returns:
        bool: Success status
    """
    print("Certify Batch Database Setup")
    print("=" * 50)

    config = DatabaseConfig()
    if config.url_override:
        print("URL: DATABASE_URL override")
    else:
        print(f"Database: {config.database}")
        print(f"Host: {config.host}:{config.port}")
        print(f"User: {config.username}")
    print()

    print("Validating configuration...")
    is_valid, error_msg = config.validate_config()
    if not is_valid:
        print(f"Configuration Error: {error_msg}")
        print("\nRequired environment variables (or DATABASE_URL):")
        print("  - DB_HOST (default: localhost)")
        print("  - DB_PORT (default: 5432)")
        print("  - DB_NAME (default: certify)")
        print("  - DB_USER (default: certify_user)")
        print("  - DB_PASSWORD")
        return False

    print("Configuration valid")

    if drop_existing:
        print("\nWARNING: This will DROP all existing tables!")
        confirmation = input("Type 'YES' to confirm: ")
        if confirmation != 'YES':
            print("Aborted by user")
            return False

    print("\nInitializing database...")
    success, message = init_database(drop_first=drop_existing)

    if not success:
        print(f"Database initialization failed: {message}")
        return False

    print(f"{message}")
    print("\nDatabase setup completed successfully!")
    print("\nNext steps:")
    print("1. Start the API server: uvicorn certify.main:app --reload")
    print("2. Create a group, upload a roster and a template")
    print("3. Create and execute a run")

    return True


def show_connection_info():
    """Show database connection information"""
    print("Database Connection Information")
    print("=" * 40)

    config = DatabaseConfig()

    if config.url_override:
        print("DATABASE_URL is set and overrides the DB_* variables")
        print()

    print(f"Host: {config.host}")
    print(f"Port: {config.port}")
    print(f"Database: {config.database}")
    print(f"Username: {config.username}")
    print(f"Password: {'*' * len(config.password) if config.password else 'Not set'}")
    print()

    print("Environment Variables:")
    env_vars = [
        ("DATABASE_URL", "***" if config.url_override else "NOT SET"),
        ("DB_HOST", config.host),
        ("DB_PORT", config.port),
        ("DB_NAME", config.database),
        ("DB_USER", config.username),
        ("DB_PASSWORD", "***" if config.password else "NOT SET"),
        ("DB_POOL_SIZE", config.pool_size),
        ("DB_MAX_OVERFLOW", config.max_overflow),
    ]

    for var, value in env_vars:
        status = "OK" if os.getenv(var) else "DEFAULT"
        print(f"  {status} {var}: {value}")


def test_connection() -> bool:
    """Test database connection"""
    print("Testing Database Connection")
    print("=" * 35)

    db_manager = get_database_manager()
    success, error_msg = db_manager.test_connection()

    if not success:
        print(f"Connection failed: {error_msg}")
        print("\nTroubleshooting:")
        print("1. Make sure the database server is running")
        print("2. Check your database credentials")
        print("3. Verify the database exists")
        return False

    print("Connection successful!")

    existing = set(inspect(db_manager.engine).get_table_names())
    found = [table for table in EXPECTED_TABLES if table in existing]
    missing = [table for table in EXPECTED_TABLES if table not in existing]
    if found:
        print(f"Tables found: {', '.join(found)}")
    if missing:
        print(f"Tables missing: {', '.join(missing)}. Run --setup to create them.")

    return True


def main():
    """Main CLI interface"""
    parser = argparse.ArgumentParser(
        description="Initialize the database for Certify Batch",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/init_database.py --setup          # Set up database
  python scripts/init_database.py --setup --drop   # Drop and recreate tables
  python scripts/init_database.py --test           # Test connection
  python scripts/init_database.py --info           # Show connection info
        """
    )

    parser.add_argument("--setup", action="store_true", help="Create database tables")
    parser.add_argument("--drop", action="store_true", help="Drop existing tables before setup (use with --setup)")
    parser.add_argument("--test", action="store_true", help="Test database connection")
    parser.add_argument("--info", action="store_true", help="Show database connection information")

    args = parser.parse_args()

    if not any([args.setup, args.test, args.info]):
        parser.print_help()
        return

    success = True

    if args.info:
        show_connection_info()
        print()

    if args.test:
        success = test_connection() and success
        print()

    if args.setup:
        if args.drop and not args.test:
            print("Testing connection before dropping tables...")
            if not test_connection():
                print("Aborting setup due to connection failure")
                sys.exit(1)
            print()

        success = setup_database(drop_existing=args.drop) and success

    if not success:
        sys.exit(1)


if __name__ == "__main__":
    main()
