"""LyriaSong account service: sign-in, sessions and the credential store."""
