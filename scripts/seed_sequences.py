"""
Seed script: inserts the default drip sequences and app config.
Run: python -m scripts.seed_sequences
"""

import asyncio
import json
import os
import sys

import asyncpg
from dotenv import load_dotenv

load_dotenv()

SEQUENCES = {
    "NuevoLead": [
        {"type": "text", "delay_minutes": 0,
         "content": "¡Hola {{nombre}}! 🎶 Gracias por escribirnos. Creamos canciones personalizadas para regalar."},
        {"type": "audio", "delay_minutes": 2,
         "content": "https://cdn.example.com/serenata/bienvenida.m4a"},
        {"type": "form", "delay_minutes": 5,
         "content": "Cuéntanos para quién es la canción aquí:\nhttps://serenata.example.com/pedido?tel={{telefono}}&nombre={{nombre}}"},
        {"type": "text", "delay_minutes": 1440,
         "content": "{{nombre}}, ¿pudiste llenar el formulario? Si tienes dudas, responde este mensaje."},
    ],
    "LetraEnviada": [
        {"type": "video", "delay_minutes": 60,
         "content": "https://cdn.example.com/serenata/testimonios.mp4"},
        {"type": "text", "delay_minutes": 1440,
         "content": "¿Qué te pareció la letra, {{nombre}}? Podemos convertirla en canción con la voz que elijas."},
    ],
    "CancionEnviada": [
        {"type": "text", "delay_minutes": 120,
         "content": "¿Te gustó el adelanto? Responde QUIERO para recibir la canción completa."},
    ],
}

APP_CONFIG = {"defaultTrigger": "NuevoLead"}


async def seed():
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        print("ERROR: DATABASE_URL not set in .env")
        sys.exit(1)

    conn = await asyncpg.connect(database_url)

    try:
        for trigger, steps in SEQUENCES.items():
            await conn.execute(
                """
                INSERT INTO sequences (trigger, steps) VALUES ($1, $2::jsonb)
                ON CONFLICT (trigger) DO UPDATE SET steps = EXCLUDED.steps
                """,
                trigger,
                json.dumps(steps),
            )
            print(f"Sequence {trigger}: {len(steps)} steps")

        for key, value in APP_CONFIG.items():
            await conn.execute(
                """
                INSERT INTO app_config (key, value) VALUES ($1, $2::jsonb)
                ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value
                """,
                key,
                json.dumps(value),
            )

        print("\nSeed complete!")

    finally:
        await conn.close()


if __name__ == "__main__":
    asyncio.run(seed())
