"""ID generation utilities."""

from nanoid import generate

ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
ID_LENGTH = 12


def gen_id(prefix: str) -> str:
    return f"{prefix}{generate(ALPHABET, ID_LENGTH)}"


def task_id() -> str:
    return gen_id("tk_")


def offer_id() -> str:
    return gen_id("of_")


def channel_id() -> str:
    return gen_id("ch_")


def candidate_id() -> str:
    return gen_id("cd_")


def rating_id() -> str:
    return gen_id("rt_")
