"""
Fresh Name Allocation

Derives a name that is not yet taken by incrementing the numeral at the
end of a proposed name: foo -> foo0 -> foo1 -> ... -> foo9 -> foo10.
Every step strictly increases the numeral, so allocation terminates for
any finite set of taken names and never revisits a previous candidate.
"""

from typing import Callable, Iterable


def increment_subscript(name: str) -> str:
    """Increment the trailing decimal numeral of name.

    A name without trailing digits gets a new "0" appended. A carry out of
    the most significant digit of the numeral widens it by one digit.
    """
    if not name:
        return "0"
    chars = list(name)
    pos = len(chars) - 1
    while pos >= 0 and chars[pos] == "9":
        pos -= 1
    if pos >= 0 and "0" <= chars[pos] <= "8":
        chars[pos] = chr(ord(chars[pos]) + 1)
        for i in range(pos + 1, len(chars)):
            chars[i] = "0"
        return "".join(chars)
    if pos == len(chars) - 1:
        # No trailing numeral at all
        return name + "0"
    # Carry past the leading 9 of the numeral: 9..9 becomes 10..0
    return "".join(chars[:pos + 1]) + "1" + "0" * (len(chars) - 1 - pos)


def next_name_away_from(name: str, is_bad: Callable[[str], bool]) -> str:
    while is_bad(name):
        name = increment_subscript(name)
    return name


def find_fresh(name: str, used: Iterable[str]) -> str:
    """Return the first name derived from name that is not in used"""
    taken = set(used)
    return next_name_away_from(name, taken.__contains__)
