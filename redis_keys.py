REDIS_MESSAGE_SEQ_KEY = "chat:message:seq" # counter issuing message ids
REDIS_MESSAGE_KEY = "chat:message:{message_id}" # message id - message hash
REDIS_ROOM_MESSAGES_KEY = "chat:room:{room_id}:messages" # room id - sorted set of message ids, scored by id
REDIS_ROOM_SEQ_KEY = "chat:room:seq" # counter issuing room ids
REDIS_ROOM_KEY = "chat:room:{room_id}" # room id - room hash
REDIS_ROOMS_KEY = "chat:rooms" # set of room ids
REDIS_READ_KEY = "chat:room:{room_id}:read:{user_id}" # last message id read by a user

# **Example `chat:message:{id}` hash fields**
# - `id` = `{messageId}`
# - `chatRoomId` = integer
# - `userId` = integer
# - `content` = text
# - `type` = "text"
# - `createdAt` / `updatedAt` = ISO timestamp (UTC)

# **Example `chat:room:{id}` hash fields**
# - `id` = `{roomId}`
# - `name` = display name
# - `type` = e.g. "group", "event", "team"
# - `createdAt` / `updatedAt` = ISO timestamp (UTC), `updatedAt` bumped on every new message
