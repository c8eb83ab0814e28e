"""
Planmend - Reconcile AI-agent feature plans with what is actually on disk.

A CLI tool and local API that:
1. Derives task lists from free-form plan text
2. Marks tasks done or pending from filesystem evidence
3. Repairs features whose status drifted from their plan
4. Rebuilds lost agent output and restores lost dependencies
5. Keeps a bounded per-project event history

Usage:
    planmend init          # Write a sample planmend.yml
    planmend report        # Recovery report for the project
    planmend reconcile ID  # Reconcile one feature
    planmend rebuild ID    # Rebuild a feature's agent output
    planmend serve         # Run the local API server
"""

__version__ = "0.1.0"
__author__ = "Planmend"
