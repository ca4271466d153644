"""
Splitting of long text bodies into platform-sized posts.
"""
from threadrelay.platform import MESSAGE_LENGTH_LIMIT


def chunk_text(text: str, size: int = MESSAGE_LENGTH_LIMIT) -> list[str]:
    """
    Split text into consecutive pieces of at most `size` characters.
    Joining the pieces in order gives back the original text; empty text yields no pieces.
    """
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [text[i:i + size] for i in range(0, len(text), size)]
