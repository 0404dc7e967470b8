import logging
import os
import sqlite3
from typing import Optional

DB_FILE = os.environ.get("GYM_RECEIPTS_DB", "gym_receipts/data/gym_data.db")


def create_database(db_name: str) -> Optional[sqlite3.Connection]:
    """
    Connects to an SQLite database and creates the necessary tables if they don't exist.
    Args:
        db_name (str): The name of the database file (e.g., 'gym_data.db' or ':memory:').
    Returns:
        The open connection, or None if the schema could not be created.
    """
    conn = None
    try:
        conn = sqlite3.connect(db_name, check_same_thread=False)
        cursor = conn.cursor()

        cursor.execute(
            """
        CREATE TABLE IF NOT EXISTS members (
            id TEXT PRIMARY KEY,
            custom_member_id TEXT,
            name TEXT NOT NULL,
            mobile_no TEXT,
            email TEXT,
            payment_mode TEXT,
            plan_type TEXT,
            subscription_start_date TEXT,
            subscription_end_date TEXT,
            subscription_status TEXT,
            registration_fee REAL DEFAULT 0,
            package_fee REAL DEFAULT 0,
            membership_fees REAL DEFAULT 0,
            discount REAL DEFAULT 0,
            paid_amount REAL DEFAULT 0,
            status TEXT DEFAULT 'active',
            created_at TEXT,
            updated_at TEXT
        );
        """
        )

        cursor.execute(
            """
        CREATE TABLE IF NOT EXISTS master_packages (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            duration_type TEXT NOT NULL CHECK (duration_type IN ('monthly', 'quarterly', 'half_yearly', 'yearly', 'custom')),
            duration_months INTEGER NOT NULL,
            price REAL NOT NULL,
            registration_fee REAL,
            discount REAL,
            payment_method TEXT,
            is_active BOOLEAN DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT
        );
        """
        )

        cursor.execute(
            """
        CREATE TABLE IF NOT EXISTS master_tax_settings (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            tax_type TEXT NOT NULL CHECK (tax_type IN ('cgst', 'sgst', 'igst', 'gst', 'vat', 'service_tax', 'other')),
            percentage REAL NOT NULL,
            is_inclusive BOOLEAN DEFAULT 0,
            is_active BOOLEAN DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT
        );
        """
        )

        cursor.execute(
            """
        CREATE TABLE IF NOT EXISTS receipts (
            id TEXT PRIMARY KEY,
            receipt_number TEXT NOT NULL,
            member_id TEXT NOT NULL,
            member_name TEXT,
            amount REAL NOT NULL,
            amount_paid REAL NOT NULL,
            due_amount REAL NOT NULL,
            payment_type TEXT,
            payment_mode TEXT,
            description TEXT,
            receipt_category TEXT DEFAULT 'member',
            transaction_type TEXT NOT NULL,
            requested_transaction_type TEXT,
            receipt_tag TEXT,
            plan_type TEXT,
            subscription_start_date TEXT,
            subscription_end_date TEXT,
            registration_fee REAL DEFAULT 0,
            package_fee REAL DEFAULT 0,
            discount REAL DEFAULT 0,
            base_amount REAL DEFAULT 0,
            tax_amount REAL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT,
            created_by TEXT,
            original_receipt_id TEXT,
            version_number INTEGER NOT NULL DEFAULT 1,
            is_current_version BOOLEAN NOT NULL DEFAULT 1,
            superseded_at TEXT,
            FOREIGN KEY (member_id) REFERENCES members(id) ON DELETE CASCADE
        );
        """
        )

        cursor.execute(
            """
        CREATE TABLE IF NOT EXISTS receipt_tax_mapping (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            receipt_id TEXT NOT NULL,
            tax_setting_id TEXT NOT NULL,
            tax_name TEXT NOT NULL,
            tax_type TEXT NOT NULL,
            tax_percentage REAL NOT NULL,
            is_inclusive BOOLEAN NOT NULL,
            base_amount REAL NOT NULL,
            tax_amount REAL NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (receipt_id) REFERENCES receipts(id) ON DELETE CASCADE
        );
        """
        )
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_receipts_member ON receipts (member_id, is_current_version)"
        )
        conn.commit()
    except sqlite3.Error as e:
        logging.error(f"Failed to create database schema in {db_name}: {e}", exc_info=True)
        if conn:
            conn.close()
        return None
    return conn


def initialize_database(db_file: str = DB_FILE) -> Optional[sqlite3.Connection]:
    """Creates the data directory (for file databases) and the schema."""
    directory = os.path.dirname(db_file)
    if db_file != ":memory:" and directory:
        os.makedirs(directory, exist_ok=True)
    return create_database(db_file)
