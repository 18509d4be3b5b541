# src/s3_migration/__init__.py
"""
s3-migration: Bulk S3 bucket migration driven by S3 Inventory and S3 Batch Operations.

This package reconciles the source bucket's inventory configuration, waits
for an inventory manifest, filters it with S3 Select and copies the selected
objects with one or two ordered batch jobs, judging the outcome against a
required success ratio.

The primary entry point for programmatic use is the `MigrationRunner` class.
"""

from typing import List

from s3_migration.runner import MigrationRunner

__all__: List[str] = ["MigrationRunner"]
