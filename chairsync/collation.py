"""Sort keys for JSON-like values.

collation_key() serializes a value to bytes such that sorting the bytes sorts
the values in the following order:

1. null values
2. booleans
3. numbers
4. strings
5. arrays
6. objects

Items in arrays and objects are in turn sorted using the same criteria. This is
the CouchDB collation order, except that strings are compared by their UTF-8
encoding instead of using ICU ordering. PouchDB has the same quirk, and it
doesn't really show up much in practise.

Used to implement the Mango comparison operators and 'sort' of _find.

"""
import collections.abc
import numbers
import struct

# specifies the order
(END, NONE, FALSE, TRUE, NEGATIVE_NUMBER, ZERO, POSITIVE_NUMBER, EMPTY_STRING,
 STRING, EMPTY_ARRAY, ARRAY, EMPTY_OBJECT, OBJECT) = range(13)

END_MARKER = object()


def collation_key(value):
    stack = [value]
    result = bytearray()
    while stack:
        item = stack.pop()
        tag = type_tag(item)
        result.append(tag)
        if tag == ARRAY:
            stack.append(END_MARKER)
            stack.extend(reversed(item))
        elif tag == OBJECT:
            stack.append(END_MARKER)
            for key, member in reversed(list(item.items())):
                stack.append(member)
                stack.append(key)
        elif tag == NEGATIVE_NUMBER:
            # flipping means bigger negative numbers come first, see:
            # https://stackoverflow.com/a/43305015
            result += bytes(b ^ 0xff for b in pack_number(item))
        elif tag == POSITIVE_NUMBER:
            result += pack_number(item)
        elif tag == STRING:
            result += item.encode('UTF-8') + b'\0'
    return bytes(result)


def type_tag(value):
    if value is END_MARKER:
        return END
    if value is None:
        return NONE
    if value is False:
        return FALSE
    if value is True:
        return TRUE
    if isinstance(value, numbers.Number):
        if value < 0:
            return NEGATIVE_NUMBER
        return ZERO if value == 0 else POSITIVE_NUMBER

    options = [(str, EMPTY_STRING, STRING),
               (collections.abc.Sequence, EMPTY_ARRAY, ARRAY),
               (collections.abc.Mapping, EMPTY_OBJECT, OBJECT)]
    for cls, empty_tag, tag in options:
        if isinstance(value, cls):
            return tag if value else empty_tag
    raise ValueError(f'not a JSON value: {type(value)}')


def pack_number(num):
    return struct.pack('>d', num)


def type_name(value):
    """The Mango name of a value's type, as used by the $type operator."""

    return {
        NONE: 'null',
        FALSE: 'boolean',
        TRUE: 'boolean',
        NEGATIVE_NUMBER: 'number',
        ZERO: 'number',
        POSITIVE_NUMBER: 'number',
        EMPTY_STRING: 'string',
        STRING: 'string',
        EMPTY_ARRAY: 'array',
        ARRAY: 'array',
        EMPTY_OBJECT: 'object',
        OBJECT: 'object',
    }[type_tag(value)]
