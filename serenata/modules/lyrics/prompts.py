"""
Prompts and outbound message templates for lyrics and songs.
"""

LYRICS_SYSTEM_ROLE = (
    "Eres un compositor profesional de canciones personalizadas en español. "
    "Escribes letras emotivas, con rima y estructura de canción "
    "(versos, coro, puente). Respondes solo con la letra, sin comentarios."
)

LYRICS_PROMPT = """Escribe la letra de una canción personalizada.

Motivo de la canción: {purpose}
La canción está dedicada a: {subject_name}
Anécdotas y detalles que deben aparecer en la letra:
{anecdotes}

Reglas:
- Menciona el nombre {subject_name} al menos una vez en el coro
- Usa las anécdotas de forma natural, sin listarlas
- Estructura: Verso 1, Coro, Verso 2, Coro, Puente, Coro final
- No incluyas títulos, acordes ni explicaciones
"""

STYLE_SYSTEM_ROLE = (
    "Eres un productor musical. Describes estilos musicales con términos técnicos "
    "de género, instrumentación, tempo y voz, sin mencionar artistas reales."
)

STYLE_DRAFT = """Quiero una canción con un estilo parecido al de {artist}, dentro del género {genre}, \
cantada por una voz {voice_type}.
Describe ese estilo sin nombrar al artista ni a ninguna otra persona real, \
para evitar problemas de derechos de autor: habla del género, la época, los instrumentos, \
el tempo, la producción y el tipo de voz."""

STYLE_REFINE_PROMPT = """Convierte la siguiente descripción en una lista de términos de estilo musical \
separados por comas, en inglés, de máximo {max_chars} caracteres en total. \
No incluyas nombres de artistas. Responde solo con la lista.

Descripción:
{draft}"""

STYLE_MAX_CHARS = 120
TITLE_MAX_CHARS = 30


def build_lyrics_prompt(purpose: str, subject_name: str, anecdotes: str) -> str:
    return LYRICS_PROMPT.format(
        purpose=purpose or "una ocasión especial",
        subject_name=subject_name or "una persona especial",
        anecdotes=anecdotes or "(sin anécdotas)",
    )


def build_style_draft(artist: str, genre: str, voice_type: str) -> str:
    return STYLE_DRAFT.format(
        artist=artist or "un artista popular",
        genre=genre or "pop",
        voice_type=voice_type or "cálida",
    )


def clean_style_prompt(raw: str, max_chars: int = STYLE_MAX_CHARS) -> str:
    """Single line, comma-separated, cut at the last full term that fits."""
    terms = [t.strip(" .\n\t\"'") for t in raw.replace("\n", ",").split(",")]
    terms = [t for t in terms if t]
    style = ""
    for term in terms:
        candidate = f"{style}, {term}" if style else term
        if len(candidate) > max_chars:
            break
        style = candidate
    return style or raw.strip()[:max_chars]


def song_title(purpose: str, subject_name: str = "") -> str:
    title = (purpose or subject_name or "Tu canción").strip()
    return title[:TITLE_MAX_CHARS].strip()


def lyrics_greeting(requester_name: str, subject_name: str) -> str:
    first_name = requester_name.split()[0] if requester_name.strip() else ""
    hello = f"¡Hola {first_name}!" if first_name else "¡Hola!"
    return f"{hello} Ya está lista la letra de la canción para {subject_name or 'tu persona especial'} 🎶"


def song_delivery_intro(subject_name: str) -> str:
    return f"🎵 Esta es la letra de tu canción para {subject_name or 'tu persona especial'}:"
