"""FreeTalk realtime core: sessions, rooms, presence and call signalling."""
