# This module handles context budgeting

# +---------------------+
# |      History        |   (Persisted, full transcript)
# |---------------------|
# | User turns          |
# | Assistant answers   |
# | Tool results        |
# +---------------------+
#          |
#          |  oldest block folded / trimmed FIFO
#          v
# +------------------------------+
# |     Provider transcript      |   (Assembled before every generate)
# |------------------------------|
# | System message               |
# | Summary of older history     |
# | Recent window                |
# | Pending turn (user + tools)  |
# +------------------------------+
#          |
#          v
#   [LLM provider / tool call]
