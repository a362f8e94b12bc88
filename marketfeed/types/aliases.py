# -------- Aliases (clarify intent) --------
UnixMillis = int
UnixSeconds = int
Symbol = str
Resolution = str  # "1", "5", "15", "D", "W"
