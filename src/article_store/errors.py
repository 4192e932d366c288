"""Errors raised by the article store."""


class StoreError(Exception):
    """The backing store could not complete an operation."""


class MatchListError(ValueError):
    """A match list is malformed or its keys and scores disagree in length."""
