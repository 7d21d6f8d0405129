# This module keeps the conversation inside the model's context budget

# +---------------------------+
# |   Client history          |   (whatever the UI sends, any length)
# +---------------------------+
#         |
#         v   trim: > 6 messages -> notice + acknowledgement + last 4
# +---------------------------+
# |   Bounded history         |   (newest user message always kept)
# +---------------------------+
#         |
#         v   each round appends assistant tool calls + tool results
# +---------------------------+
# |   Working messages        |
# |---------------------------|
# | older tool rounds         |   -> compact: one-line summaries,
# |                           |      tool call inputs cleared
# | newest tool round         |   -> kept at full fidelity
# +---------------------------+
#         |
#         v
#   [model call]
