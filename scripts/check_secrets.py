#!/usr/bin/env python3
# scripts/check_secrets.py
"""Pre-commit hook to detect test/weak credentials in .env files."""
import sys
from pathlib import Path
from typing import List, Tuple

from core.security import FORBIDDEN_CREDENTIALS, validate_credential_strength

SECRET_KEYS = {
    "API_KEY": 32,
    "GITHUB_WEBHOOK_SECRET": 32,
}


def check_file(filepath: Path) -> Tuple[bool, List[str]]:
    """Check the secret-bearing keys of a .env file."""
    issues = []
    try:
        content = filepath.read_text()
    except OSError as e:
        return False, [f"Error reading file: {e}"]

    for line_num, line in enumerate(content.splitlines(), 1):
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip().strip("'\"")

        if value.lower() in FORBIDDEN_CREDENTIALS:
            issues.append(f"Line {line_num}: {key} uses a known test credential")
            continue
        if key in SECRET_KEYS and value:
            valid, problems = validate_credential_strength(value, SECRET_KEYS[key])
            if not valid:
                issues.extend(f"Line {line_num}: {key}: {p}" for p in problems)

    return len(issues) == 0, issues


def main():
    if len(sys.argv) < 2:
        print("Usage: check_secrets.py <file>")
        return 0

    all_passed = True
    for filepath in sys.argv[1:]:
        path = Path(filepath)
        if not path.name.startswith(".env") or "example" in path.name:
            continue

        passed, issues = check_file(path)
        if not passed:
            all_passed = False
            print(f"\nSECURITY: weak credentials detected in {filepath}")
            for issue in issues:
                print(f"   {issue}")

    if not all_passed:
        print("\nNever commit real secrets to git. Generate strong ones with:")
        print('  python -c "import secrets; print(secrets.token_urlsafe(32))"')
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
