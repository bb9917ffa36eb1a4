REDIS_SNAPSHOT_KEY = "room:snapshot:{code}" # room code - JSON room document, expires via key TTL

# **Example `room:snapshot:{code}` value**
# {
#   "code": "AB12CD",
#   "mode": "SINGLE" | "COOP",
#   "data": {...opaque client state...},
#   "createdAt": ISO timestamp,
#   "updatedAt": ISO timestamp
# }
#
# **TTL**
# - `SET ... NX EX ROOM_TTL_SECONDS` on create.
# - `SET ... XX EX ROOM_TTL_SECONDS` on update, so every write restarts the window.
