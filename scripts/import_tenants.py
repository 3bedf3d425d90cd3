#!/usr/bin/env python3
"""
Import tenants from the JSON fallback file into the clients table.

Reads the file named by TENANTS_FILE (default config/clients.json).
Run from project root: python scripts/import_tenants.py
"""

import os
import sys

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from dotenv import load_dotenv
load_dotenv(os.path.join(project_root, ".env"))

from leadsync.config import settings
from leadsync.db import supabase
from leadsync.tenants import FileTenantStore


def main():
    if supabase is None:
        print("Error: SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set in .env")
        sys.exit(1)

    tenants = FileTenantStore(settings.tenants_file).load()
    if not tenants:
        print(f"No tenants found in {settings.tenants_file}")
        sys.exit(0)

    created = 0
    for tenant in tenants:
        slug = tenant.slug or tenant.id
        existing = supabase.table("clients").select("id").eq("slug", slug).execute()
        if existing.data:
            print(f"  skip {slug}: already present")
            continue
        supabase.table("clients").insert({
            "slug": slug,
            "name": tenant.name,
            "tintim_instance_id": tenant.instance_id,
            "kommo_account_id": tenant.account_id,
            "kommo_pipeline_id": tenant.pipeline_id,
            "spreadsheet_id": tenant.spreadsheet_id,
            "sheet_name": tenant.sheet_name,
            "feature_flags": tenant.feature_flags,
            "active": tenant.active,
        }).execute()
        created += 1
        print(f"  created {slug}")

    print(f"Imported {created} of {len(tenants)} tenants.")


if __name__ == "__main__":
    main()
