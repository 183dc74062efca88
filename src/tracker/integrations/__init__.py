"""Third-party CRM integrations."""
