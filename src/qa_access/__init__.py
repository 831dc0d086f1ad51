"""Role, tenant and credit authorization core for a multi-tenant QA platform."""
