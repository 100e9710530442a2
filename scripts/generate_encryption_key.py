#!/usr/bin/env python3
"""
Generate a master key for POS credential encryption.
Run this script to generate a key, then add it to your .env file as POS_TOKEN_ENCRYPTION_KEY.
"""

import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from posreviews.encryption import generate_key

if __name__ == "__main__":
    key = generate_key()
    print("=" * 60)
    print("Generated POS_TOKEN_ENCRYPTION_KEY:")
    print("=" * 60)
    print(key)
    print("=" * 60)
    print("\nAdd this to your .env file:")
    print(f"POS_TOKEN_ENCRYPTION_KEY={key}")
    print("\n⚠️  IMPORTANT:")
    print("   - Keep this key secret and never commit it to version control")
    print("   - If you change this key, all stored POS credentials must be reconnected")
    print("=" * 60)
