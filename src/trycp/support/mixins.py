"""
Helpers for value objects: commands, envelopes, cells and settings.

Hashes and keys are bytes, which are shown as short hex so that values stay readable in logs.
"""
import threading

# bytes beyond this many are elided when shown
shown_bytes = 8


def show(val):
    """
    >>> show(b'\\x84\\x20\\x24')
    '0x842024'
    >>> show(bytes(range(10)))
    '0x0001020304050607..'
    >>> show(('a', None))
    "('a', None)"
    """
    if val is None:
        return "None"
    if isinstance(val, (bytes, bytearray)):
        return '0x' + bytes(val[:shown_bytes]).hex() + ('..' if len(val) > shown_bytes else '')
    if isinstance(val, (tuple, list)):
        inner = ", ".join(show(v) for v in val)
        return '(' + inner + ')' if isinstance(val, tuple) else '[' + inner + ']'
    return "'" + str(val) + "'"


class StringerMixin:
    """ str() is the class name and the public attributes, in key order. """

    def __str__(self):
        return self.__class__.__name__ + ':' + self._sorted_items_string()

    def _sorted_items_string(self):
        return "{" + ", ".join("'%s': %s" % (key, show(val))
                               for key, val in sorted(self.__dict__.items()) if not key.startswith('_')) + "}"


class CommonEqualityMixin(object):
    """
    A deep equals comparison for value objects: equal when of the same class with equal attributes.
    Comparing an object graph that refers back to itself raises ValueError.
    """
    _comparing = threading.local()

    def __eq__(self, other):
        if not isinstance(other, self.__class__) or not hasattr(other, '__dict__'):
            return False
        active = self._active_comparisons()
        pair = (id(self), id(other))
        if pair in active:
            raise ValueError("recursive comparison of %s" % type(self).__name__)
        active.add(pair)
        try:
            return self.__dict__ == other.__dict__
        finally:
            active.discard(pair)

    def __ne__(self, other):
        return not self.__eq__(other)

    @classmethod
    def _active_comparisons(cls):
        local = CommonEqualityMixin._comparing
        if not hasattr(local, 'pairs'):
            local.pairs = set()
        return local.pairs
