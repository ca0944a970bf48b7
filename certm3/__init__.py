"""Email-verified X.509 client certificate issuance service."""
