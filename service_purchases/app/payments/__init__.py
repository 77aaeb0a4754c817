"""
Payment collaborator clients (HTTP gateway and sandbox).
"""
