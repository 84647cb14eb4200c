"""Prompt templates used by the stream service, the duel engine and the arbiter."""

DEFAULT_PROMPTS = {
    "assistant": "You are an expert AI assistant. Provide clear, well-reasoned responses.",
    "consultant": (
        "You are an AI consultant helping with research and analysis. "
        "Provide insightful, well-structured answers."
    ),
    "critic": (
        "You are a critical analyst. Find weaknesses, contradictions, and potential "
        "problems in reasoning. Be constructive but rigorous."
    ),
    "arbiter": (
        "You are a discussion arbiter. Synthesize different viewpoints, highlight "
        "consensus and disagreements."
    ),
    "moderator": (
        "You are the moderator of a discussion between several AI experts.\n\n"
        "Your task:\n"
        "1. Analyse the user's request and every expert answer\n"
        "2. Extract the key theses of each expert\n"
        "3. Remove repetition and noise\n"
        "4. Structure the information by topic\n"
        "5. Mark points of consensus and disagreement\n\n"
        "Answer format:\n"
        "## Summary\n"
        "## Key theses\n"
        "## Disagreements (if any)\n"
        "## Recommendation"
    ),
}

CONTESTANT_SYSTEM_PROMPT = (
    "You are a contestant in an AI model competition. Answer the prompt as best you can."
)

DUEL_SYSTEM_PROMPT = (
    "You are an expert in a duel. Provide a well-argued response and engage "
    "directly with your opponent's position."
)

DUEL_SEPARATOR = "---"
DUEL_OWN_LABEL = "Your previous argument:"
DUEL_OPPONENT_LABEL = "Opponent's argument:"
DUEL_NO_RESPONSE = "(no response)"
DUEL_INSTRUCTION = (
    "Respond to your opponent's argument: address its strongest points, "
    "defend or refine your own position, and formulate your next argument."
)

ARBITER_SYSTEM_PROMPT = (
    "You are an impartial AI arbiter evaluating responses from multiple AI models "
    "in a competition.\n"
    "You must evaluate each response based on the given criteria and provide fair, "
    "detailed scores.\n"
    "Be objective and analytical. Consider both strengths and weaknesses of each response.\n"
    "Evaluate ONLY based on the criteria provided, with their respective weights."
)

ARBITER_INVERSE_NOTE = (
    "IMPORTANT: Cost and speed criteria are INVERSE. For these, 10 = best "
    "(cheapest / fastest), 1 = worst (most expensive / slowest). Use the response "
    "time and token count of each contestant as reference."
)

ARBITER_USER_TEMPLATE = """## Original Prompt Given to Contestants
{prompt}

## Evaluation Criteria (with weights)
{criteria}
{inverse_note}

## Contestant Responses
{responses}

Evaluate each contestant's response BY EACH CRITERION separately (1-10 for each) and
add a brief analytical comment (2-3 sentences).

Reply with JSON only, in exactly this shape:
{{"evaluations": [{{"model_id": "<exact model_id>", "criteria_scores": {{{criteria_keys}}}, "comment": "..."}}]}}"""

ARBITER_RESPONSE_TEMPLATE = (
    '=== Contestant {index} (model_id: "{model_id}") ===\n'
    "Response time: {response_time}\n"
    "Tokens: {tokens}\n\n"
    "{text}"
)
