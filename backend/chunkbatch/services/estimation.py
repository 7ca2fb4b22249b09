"""Token and cost estimates for batch submissions."""

import math

CHARS_PER_TOKEN = 3.8
COST_PER_1K_TOKENS_USD = 0.00059
BATCH_DISCOUNT = 0.5
# Instructions and context wrapped around every chunk.
PROMPT_OVERHEAD_CHARS = 2800


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def token_cost_usd(tokens: int) -> float:
    """Price of *tokens* at batch rates."""
    return round(tokens / 1000 * COST_PER_1K_TOKENS_USD * BATCH_DISCOUNT, 6)


def estimate_batch(contents: list[str], max_tokens_per_chunk: int) -> tuple[int, float]:
    """Return (estimated tokens, estimated cost in USD) for a batch of chunk contents.

    Output is budgeted at the per-chunk token ceiling.
    """
    overhead = math.ceil(PROMPT_OVERHEAD_CHARS / CHARS_PER_TOKEN)
    tokens = sum(estimate_tokens(c) + overhead + max_tokens_per_chunk for c in contents)
    return tokens, token_cost_usd(tokens)
