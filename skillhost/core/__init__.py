"""Core runtime: errors, settings, protocol, supervision, capability gating."""
