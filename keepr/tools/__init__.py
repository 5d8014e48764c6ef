"""Clients for the external collaborators: AddPipe, S3, SiteFlow."""
