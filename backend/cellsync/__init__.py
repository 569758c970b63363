"""cellsync: CRM/helpdesk integrations and contact sync for messaging cells."""
