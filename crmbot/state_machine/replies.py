"""
User-facing texts the engine sends on its own behalf.

Flow authors own every other message; these only appear when the graph does
not say anything or cannot be executed.
"""

APOLOGY = "Sorry, something went wrong on our side. Please try again in a moment."

CYCLE_APOLOGY = (
    "Sorry, I got a bit lost in this conversation. "
    "Please send your message again and we will pick it up from there."
)

LIMIT_APOLOGY = "Sorry, this is taking longer than expected. Please send your message again."

GENERIC_GREETING = "Hello! How can I help you today?"

WELCOME = "Hi! Welcome, thanks for reaching out."

FALLBACK = "How can I help you?"

UNKNOWN_NODE = "Sorry, I can't process this request right now."

END_OF_FLOW = "Thank you for using our service."

CHOOSE_OPTION = "Please choose an option:"
