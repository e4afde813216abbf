#!/usr/bin/env python3
"""
Roster Test Data Generator for Certify Batch

Generates roster CSV files with the columns nome, email, curso.
A configurable share of rows has an empty name or email, which a run
skips without counting as an error.

Usage:
    python scripts/generate_test_data.py [number_of_entries] [output_filename] [--missing-percent N] [--legacy]

Examples:
    python scripts/generate_test_data.py 100                             # 100 entries, 5% incomplete
    python scripts/generate_test_data.py 1000 --missing-percent 20       # 1000 entries, 20% incomplete
    python scripts/generate_test_data.py 500 turma.csv --legacy          # also write legacy column file

Legacy mode writes <output>.columns.txt next to the CSV, holding the
comma-separated column list the old dataset encoding stored separately.
"""

import csv
import random
import sys
import unicodedata
from pathlib import Path

COLUMNS = ["nome", "email", "curso"]

FIRST_NAMES = [
    "Ana", "Beto", "Carla", "Daniel", "Eduarda", "Felipe", "Gabriela", "Heitor",
    "Isabela", "João", "Karina", "Lucas", "Mariana", "Nicolas", "Olívia", "Pedro",
    "Rafaela", "Samuel", "Tatiana", "Vitor", "James", "Mary", "Patricia", "Robert",
    "Jennifer", "Michael", "Linda", "Emma", "Noah", "Sophia", "Liam", "Chloe"
]

LAST_NAMES = [
    "Silva", "Santos", "Oliveira", "Souza", "Rodrigues", "Ferreira", "Alves", "Pereira",
    "Lima", "Gomes", "Costa", "Ribeiro", "Martins", "Carvalho", "Almeida", "Lopes",
    "Smith", "Johnson", "Williams", "Brown", "Garcia", "Miller", "Davis", "Wilson"
]

COURSES = [
    "Python Fundamentals", "Data Analysis with pandas", "Web APIs with FastAPI",
    "Intro to Machine Learning", "SQL for Analysts", "Cloud Deployment",
    "Frontend Basics", "Product Design Sprint"
]

EMAIL_DOMAINS = ["example.com", "mail.example.org", "school.example.net"]


def generate_name():
    """Generate a random full name"""
    return f"{random.choice(FIRST_NAMES)} {random.choice(LAST_NAMES)}"


def generate_email(name):
    """Generate an email address from the name"""
    ascii_name = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode()
    local = ascii_name.lower().replace(" ", random.choice([".", "_", ""]))
    if random.random() < 0.3:
        local += str(random.randint(1, 99))
    return f"{local}@{random.choice(EMAIL_DOMAINS)}"


def generate_row(missing_percentage=5):
    """Generate one roster row; some rows lose their name or email"""
    name = generate_name()
    row = {"nome": name, "email": generate_email(name), "curso": random.choice(COURSES)}
    if random.random() < missing_percentage / 100.0:
        row[random.choice(["nome", "email"])] = ""
    return row


def generate_roster_csv(filename, num_entries=1000, missing_percentage=5, legacy=False):
    """Generate a roster CSV file under uploads/"""
    print(f"Generating {num_entries:,} roster entries ({missing_percentage}% incomplete)...")

    uploads_dir = Path("uploads")
    uploads_dir.mkdir(exist_ok=True)

    filepath = uploads_dir / filename
    incomplete = 0

    with open(filepath, 'w', newline='', encoding='utf-8') as csvfile:
        writer = csv.DictWriter(csvfile, fieldnames=COLUMNS)
        writer.writeheader()

        progress_interval = max(1, num_entries // 20)

        for i in range(num_entries):
            row = generate_row(missing_percentage)
            if not row["nome"] or not row["email"]:
                incomplete += 1
            writer.writerow(row)

            if (i + 1) % progress_interval == 0:
                progress = ((i + 1) / num_entries) * 100
                print(f"Progress: {i + 1:,}/{num_entries:,} entries ({progress:.1f}%)")

    file_size = filepath.stat().st_size
    print(f"Successfully generated {filepath}")
    print(f"File size: {file_size / (1024 * 1024):.2f} MB ({file_size:,} bytes)")
    print(f"Total entries: {num_entries:,} + header = {num_entries + 1:,} lines")
    print(f"Rows without name or email: {incomplete:,}")

    if legacy:
        columns_path = filepath.with_suffix(".columns.txt")
        columns_path.write_text(",".join(COLUMNS), encoding="utf-8")
        print(f"Legacy column list written to {columns_path}")

    return str(filepath)


def print_usage():
    """Print usage information"""
    print("""
Usage: python scripts/generate_test_data.py [number_of_entries] [output_filename] [--missing-percent N] [--legacy]

Arguments:
    number_of_entries    Number of roster rows to generate (default: 1000)
    output_filename      Output filename (default: roster_[number].csv)
    --missing-percent N  Percentage of rows with an empty name or email (0-100, default: 5)
    --legacy             Also write the legacy comma-separated column file
    """)


def main():
    """Main function to handle command-line arguments"""
    args = sys.argv[1:]
    missing_percentage = 5
    legacy = False

    if '--legacy' in args:
        legacy = True
        args.remove('--legacy')

    for i, arg in enumerate(args):
        if arg.startswith('--missing-percent'):
            try:
                if '=' in arg:
                    missing_percentage = int(arg.split('=')[1])
                    args.pop(i)
                else:
                    missing_percentage = int(args[i + 1])
                    args.pop(i + 1)
                    args.pop(i)
            except (IndexError, ValueError):
                print("Error: --missing-percent must be followed by a valid integer (0-100)")
                print_usage()
                sys.exit(1)
            break

    if not 0 <= missing_percentage <= 100:
        print("Error: missing percentage must be between 0 and 100")
        sys.exit(1)

    try:
        num_entries = int(args[0]) if args else 1000
    except ValueError:
        print("Error: Number of entries must be a valid integer")
        print_usage()
        sys.exit(1)

    if len(args) > 2:
        print("Error: Too many arguments")
        print_usage()
        sys.exit(1)

    filename = args[1] if len(args) == 2 else f"roster_{num_entries}.csv"
    if not filename.endswith('.csv'):
        filename += '.csv'

    if num_entries <= 0:
        print("Error: Number of entries must be positive")
        sys.exit(1)

    generate_roster_csv(filename, num_entries, missing_percentage, legacy)


if __name__ == "__main__":
    main()
