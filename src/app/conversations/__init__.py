"""Conversation ledger and reply workflow.

Webhook payload normalization, signature checks, the conversation/message
ledger, AI reply drafting, the approval workflow and the dashboard change
stream.
"""
