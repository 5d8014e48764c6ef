"""SiteFlow status callback matching and reconciliation."""
