#!/usr/bin/env python3
"""Generate the sample employee CSV used by the TableStream MCP server.

Run after installing the package (``pip install -e .``).
"""

import argparse

from tablestream_mcp.sample_data import NAMES, write_csv


def parse_arguments():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Generate sample employee data")
    parser.add_argument('--output', default='data/employees.csv',
                        help='Destination CSV path (default: data/employees.csv)')
    parser.add_argument('--seed', type=int, default=42,
                        help='Random seed; the same seed always produces the same file')
    return parser.parse_args()


def main():
    args = parse_arguments()
    path = write_csv(args.output, seed=args.seed)
    print(f"Generated sample employee data: {path}")
    print(f"Created {len(NAMES)} employee records")


if __name__ == '__main__':
    main()
