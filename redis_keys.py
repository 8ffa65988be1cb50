REDIS_ROOM_KEY = "room:meta:{room_id}" # room id - hash of room fields
REDIS_ROOM_CODE_KEY = "room:code:{code}" # room code - room id
REDIS_ROOM_PLAYERS_KEY = "room:players:{room_id}" # room id - set of player ids
REDIS_PLAYER_KEY = "player:{player_id}" # player id - hash of player fields
REDIS_ROUND_KEY = "round:{room_id}:{number}" # room id + round number - hash of round fields
REDIS_ROUND_MEMES_KEY = "round:{room_id}:{number}:memes" # player id -> candidate json
REDIS_ROUND_MEME_VOTES_KEY = "round:{room_id}:{number}:meme_votes" # voter id -> candidate id
REDIS_ROUND_CAPTIONS_KEY = "round:{room_id}:{number}:captions" # player id -> caption json
REDIS_ROUND_CAPTION_VOTES_KEY = "round:{room_id}:{number}:caption_votes" # voter id -> caption id
REDIS_ROUND_TALLY_KEY = "round:{room_id}:{number}:tally:{stage}" # set NX once per stage
REDIS_ROOM_CHANNEL = "room:{code}" # room code - pub/sub channel name
REDIS_PRESENCE_KEY = "presence:{channel}" # channel name - client id -> member json

# **Example `room:meta:{id}` hash fields**
# - `id` = `{roomId}`
# - `room_code` = 6 characters from [0-9A-Z]
# - `status` = current phase (lobby, meme-selection, ...)
# - `current_round_number` = integer, 0 while in the lobby
# - `total_rounds` = integer
# - `created_at` = ISO timestamp
#
# **Example `player:{id}` hash fields**
# - `id`, `room_id`, `username`, `avatar_src`
# - `is_ready` = "1" or "0"
# - `current_score` = integer (HINCRBY)
