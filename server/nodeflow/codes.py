"""Message type codes of the nodeflow WebSocket protocol.

1xx are client requests, 2xx successful replies, 25x server pushes and 3xx
errors.
"""

# ================================
# Requests
# ================================
CODE_LOAD_GRAPH = 100
CODE_GET_GRAPH = 101
CODE_ADD_NODE = 102
CODE_UPDATE_NODE = 103
CODE_REMOVE_NODE = 104
CODE_ADD_EDGE = 105
CODE_REMOVE_EDGE = 106
CODE_GET_REFERENCES = 107
CODE_BIND_PARAMETER = 108
CODE_PREVIEW_PARAMETERS = 109
CODE_RUN_NODE = 110
CODE_CANCEL_RUN = 111
CODE_GET_RESULTS = 112
CODE_GET_LOGS = 113
CODE_CLEAR_LOGS = 114
CODE_CLEAR_RESULTS = 115

REQUEST_TYPES = set(range(CODE_LOAD_GRAPH, CODE_CLEAR_RESULTS + 1))

# ================================
# Replies
# ================================
CODE_GRAPH = 200
CODE_NODE_OK = 201
CODE_EDGE_OK = 202
CODE_REFERENCES = 203
CODE_PARAMETERS = 204
CODE_RUN_STARTED = 205
CODE_CANCEL_OK = 206
CODE_RESULTS = 207
CODE_LOGS = 208
CODE_CLEARED = 209

# ================================
# Pushes
# ================================
CODE_NODE_STATUS = 250
CODE_LOG_ENTRY = 251
CODE_RUN_FINISHED_OK = 252
CODE_RUN_FINISHED_ERROR = 253
CODE_RUN_CANCELLED = 254
CODE_LOGS_CLEARED = 255

# ================================
# Errors
# ================================
CODE_GRAPH_ERROR = 300
CODE_NODE_NOT_FOUND = 301
CODE_CYCLE_DETECTED = 302
CODE_REFERENCE_ERROR = 303
CODE_ALREADY_RUNNING = 304
CODE_NOT_RUNNING = 305
CODE_BAD_REQUEST = 306
CODE_MESSAGE_ID_ERROR = 395
CODE_UNKNOWN_TYPE = 396
