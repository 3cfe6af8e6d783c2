"""
TunnelGuard - keeps a single SSH SOCKS5 tunnel alive.

The package supervises one long-lived `ssh -D` client process, verifies its
health in layers, and relaunches it with exponential backoff when it fails.
"""
