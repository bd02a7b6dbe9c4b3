"""AgroTrust escrow HTTP service."""
