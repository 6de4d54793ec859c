# Supabase table: deployments
# This file documents the expected database schema
# Actual operations are handled via Supabase SDK in repository.py

"""
Expected Supabase table structure:
- id: uuid (primary key)
- project_id: uuid (not null)
- user_id: uuid (foreign key to users.id, not null)
- name: text (not null)
- provider: text (not null) - values: aws, gcp, azure
- infra_description: text (not null)
- status: text (not null, default: 'pending') - values: pending, deploying, deployed, failed, rolling_back, rolled_back
- outputs: jsonb (nullable)
- cost_estimate: jsonb (nullable)
- resource_summary: jsonb (nullable)
- logs: jsonb (not null, default: []) - ordered [{message, level, timestamp}], append-only
- deployment_time_seconds: integer (nullable)
- error_message: text (nullable)
- failure_phase: text (nullable) - values: deploy, rollback
- requires_manual_intervention: boolean (not null, default: false)
- created_at: timestamp (default: now())
- updated_at: timestamp (nullable)
- deployed_at: timestamp (nullable)
- rolled_back_at: timestamp (nullable)
- version: integer (not null, default: 0) - optimistic concurrency token

Indexes: (user_id, created_at desc), (project_id, status), (status)
"""
