#!/usr/bin/env python3
"""Create the tenant and audit tables for the lead sync engine."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. clients (tenants)
CREATE TABLE IF NOT EXISTS clients (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    slug VARCHAR(100) UNIQUE NOT NULL,
    name VARCHAR(255) NOT NULL,
    tintim_instance_id VARCHAR(255),
    kommo_account_id VARCHAR(64),
    kommo_pipeline_id VARCHAR(64),
    spreadsheet_id VARCHAR(255) NOT NULL,
    sheet_name VARCHAR(100) NOT NULL DEFAULT 'auto',
    webhook_source VARCHAR(20) NOT NULL DEFAULT 'tintim',
    feature_flags JSONB NOT NULL DEFAULT '{}'::jsonb,
    active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_clients_tintim_instance ON clients(tintim_instance_id)
    WHERE tintim_instance_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_clients_kommo_account ON clients(kommo_account_id);

-- 2. webhook_events (one row per accepted delivery)
CREATE TABLE IF NOT EXISTS webhook_events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    trace_id UUID UNIQUE NOT NULL,
    source VARCHAR(20) NOT NULL,
    event_type VARCHAR(100),
    job_kind VARCHAR(50),
    tenant_id VARCHAR(64),
    phone VARCHAR(32),
    status VARCHAR(20) NOT NULL,
    processing_result VARCHAR(255),
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    dead_letter JSONB,
    payload JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    processed_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS idx_webhook_events_status ON webhook_events(status);
CREATE INDEX IF NOT EXISTS idx_webhook_events_phone_created ON webhook_events(phone, created_at DESC);

-- 3. lead_trail (ordered processing steps per trace)
CREATE TABLE IF NOT EXISTS lead_trail (
    id BIGSERIAL PRIMARY KEY,
    trace_id UUID NOT NULL,
    step_order INTEGER NOT NULL,
    step_name VARCHAR(100) NOT NULL,
    status VARCHAR(20) NOT NULL,
    detail TEXT,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    duration_ms INTEGER,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_lead_trail_trace ON lead_trail(trace_id, step_order);

-- 4. leads_log (sheet writes)
CREATE TABLE IF NOT EXISTS leads_log (
    id BIGSERIAL PRIMARY KEY,
    trace_id UUID,
    tenant_id VARCHAR(64),
    source VARCHAR(20) NOT NULL,
    action VARCHAR(20) NOT NULL,
    phone VARCHAR(32) NOT NULL,
    lead_name VARCHAR(255),
    status VARCHAR(255),
    channel VARCHAR(100),
    sheet_name VARCHAR(100),
    row_number INTEGER,
    external_id VARCHAR(64),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_leads_log_tenant_created ON leads_log(tenant_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_leads_log_external ON leads_log(tenant_id, source, external_id);

-- 5. kommo_events (contact phones seen in Kommo deliveries)
CREATE TABLE IF NOT EXISTS kommo_events (
    id BIGSERIAL PRIMARY KEY,
    trace_id UUID,
    account_id VARCHAR(64),
    contact_id VARCHAR(64),
    lead_id VARCHAR(64) NOT NULL,
    phone VARCHAR(32),
    contact_name VARCHAR(255),
    action VARCHAR(20),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_kommo_events_lead ON kommo_events(lead_id);

-- 6. metric_snapshots
CREATE TABLE IF NOT EXISTS metric_snapshots (
    id BIGSERIAL PRIMARY KEY,
    source VARCHAR(50) NOT NULL,
    request_id VARCHAR(100),
    counters JSONB NOT NULL DEFAULT '{}'::jsonb,
    queues JSONB NOT NULL DEFAULT '[]'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


def main():
    print("Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    cur.execute("SELECT table_name FROM information_schema.tables WHERE table_schema = 'public' ORDER BY table_name;")
    tables = cur.fetchall()
    print(f"\nTables: {[t[0] for t in tables]}")

    cur.execute("SELECT slug, name, sheet_name, active FROM clients;")
    print(f"Clients: {cur.fetchall()}")

    cur.close()
    conn.close()
    print("\nDone!")


if __name__ == "__main__":
    main()
