"""
Flashcard generation workflows built on the gateway client.
"""
