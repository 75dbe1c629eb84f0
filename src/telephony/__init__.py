"""Telephony audio helpers: G.711 mu-law companding and hold music playback."""
