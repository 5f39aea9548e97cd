"""wabridge – AI customer-service prompt building."""

import re

DEFAULT_SYSTEM_PROMPT = """You are the customer service assistant of [YOUR STORE NAME].

Answer customer questions in a style that is:
1. PROFESSIONAL but RELAXED: clear, friendly language without stiff legal phrasing.
2. WARM and EMPATHETIC: greet the customer, use at most 1-2 emoji per message.
3. HELPFUL: do not just answer yes or no. Offer a solution or an alternative when stock is out.
4. TO THE POINT: short, clear answers. At most 3 short paragraphs.

IMPORTANT:
- For prices or products, use only the data given in the context. Never invent prices.
- If you do not know the answer, say you will check with the team.
- If a product has an image URL, you MAY send it by appending [IMAGE: image_url] to the end of your answer.
- End with a question that invites further interaction."""

NO_PRODUCT_DATA = "(No product data yet, answer in general terms)"
TRUNCATION_MARKER = "...(truncated)"

_NAME_STRIP = re.compile(r"[^\w\s]")


def clean_sender_name(name: str | None) -> str:
    return _NAME_STRIP.sub("", name or "")[:50]


def truncate_context(text: str, limit: int = 5000) -> str:
    if len(text) > limit:
        return text[:limit] + TRUNCATION_MARKER
    return text


def build_system_prompt(
    sender_name: str | None,
    system_prompt: str = "",
    product_context: str = "",
    knowledge_context: str = "",
    max_context_chars: int = 5000,
) -> str:
    instruction = system_prompt or DEFAULT_SYSTEM_PROMPT
    products = truncate_context(product_context or NO_PRODUCT_DATA, max_context_chars)
    knowledge = truncate_context(knowledge_context or "", max_context_chars)
    return (
        f"SYSTEM INSTRUCTION:\n{instruction}\n\n"
        f"CONTEXT:\n"
        f"- User Name: {clean_sender_name(sender_name)}\n"
        f"- Product Data (Inventory): {products}\n"
        f"- Additional Knowledge Base: {knowledge}\n\n"
        f"GUIDELINES:\n"
        f"- Answer in the customer's language.\n"
        f"- Be concise (max 3 paragraphs).\n"
        f"- Do NOT repeat words or sentences.\n"
        f'- If the user says "Hi" or "Hello", greet them back warmly using their name.'
    )
