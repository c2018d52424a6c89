"""
External collaborators: text generation, retrieval and message review.
Each exposes an abstract interface, a production implementation and a lazy
shared instance that tests can replace.
"""
