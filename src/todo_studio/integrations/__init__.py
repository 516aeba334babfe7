"""Google Calendar integration: OAuth tokens, reconciliation and feed tokens."""
