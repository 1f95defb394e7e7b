import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

import discord
from discord.ext import commands

from audio_source import settings
from audio_source.cache import MetadataCache, SqliteTrackStore
from audio_source.client import AudioSourceClient
from audio_source.errors import (
    AudioSourceError,
    MetadataParseError,
    NoResultsFound,
    ProcessExitedWithError,
    ProcessStartTimeout,
    RequestTimeoutError,
    ValidationError,
)
from audio_source.filters import NO_FILTER, parse_filter
from audio_source.logging_config import configure_logging
from audio_source.metadata import TrackDescriptor, validate_query
from audio_source.pipeline import AudioPipeline
from audio_source.session import PipelineSession
from audio_source.voice import VoiceAudioSource

logger = logging.getLogger("discord_bot")

DISCORD_TOKEN = os.getenv("DISCORD_TOKEN")
BOT_PREFIX = os.getenv("BOT_PREFIX", "!")
AUDIO_SOURCE_URL = os.getenv("AUDIO_SOURCE_URL")
BOT_CACHE_DB_PATH = settings.CACHE_DB_PATH or Path("data/track_cache.db")


def friendly_error_message(exc: BaseException) -> str:
    """Mensaje para el canal de texto; el detalle técnico queda en el log."""
    if isinstance(exc, ValidationError):
        return f"❌ Consulta no válida: {exc}"
    if isinstance(exc, NoResultsFound):
        return "🔍 No encontré nada con esa búsqueda. Prueba con otras palabras o una URL."
    if isinstance(exc, (ProcessStartTimeout, RequestTimeoutError)):
        return "⏱️ La fuente de audio tardó demasiado en responder. Inténtalo de nuevo."
    if isinstance(exc, MetadataParseError):
        return "⚠️ No pude leer la información de esa pista."
    if isinstance(exc, ProcessExitedWithError):
        return "⚠️ No se pudo obtener el audio de esa pista (puede estar bloqueada o no disponible)."
    if isinstance(exc, AudioSourceError):
        return "⚠️ El servicio de audio no está disponible ahora mismo."
    return "⚠️ Algo salió mal al reproducir la pista."


def format_duration(seconds: float) -> str:
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def split_filter_argument(raw: str) -> Tuple[str, str]:
    """``nightcore | never gonna give you up`` -> (filtro, consulta)."""
    if "|" in raw:
        filter_name, query = raw.split("|", 1)
        return filter_name.strip(), query.strip()
    return "", raw.strip()


@dataclass
class GuildPlayback:
    track: Optional[TrackDescriptor] = None
    session: Optional[PipelineSession] = None
    requested_by: Optional[str] = None
    filter_name: str = field(default="none")


class MusicBot(commands.Bot):
    def __init__(self) -> None:
        intents = discord.Intents.default()
        intents.message_content = True
        intents.voice_states = True
        super().__init__(command_prefix=BOT_PREFIX, intents=intents)
        self.playback: Dict[int, GuildPlayback] = {}
        self.client_api = AudioSourceClient(AUDIO_SOURCE_URL) if AUDIO_SOURCE_URL else None
        self.pipeline: Optional[AudioPipeline] = None
        if self.client_api is None:
            cache = MetadataCache(
                settings.CACHE_TTL_SECONDS,
                settings.CACHE_MAX_SIZE,
                store=SqliteTrackStore(BOT_CACHE_DB_PATH),
            )
            self.pipeline = AudioPipeline(cache=cache)

    async def setup_hook(self) -> None:
        if self.pipeline is not None and self.pipeline.cache is not None:
            self.pipeline.cache.start_sweeper(settings.CACHE_SWEEP_INTERVAL)
        await self.add_cog(MusicCog(self))

    async def close(self) -> None:
        if self.pipeline is not None:
            await self.pipeline.close_all("shutdown")
            if self.pipeline.cache is not None:
                await self.pipeline.cache.stop_sweeper()
        await super().close()

    async def get_track_info(self, query: str) -> TrackDescriptor:
        if self.client_api is not None:
            return await asyncio.to_thread(self.client_api.get_track_info, query)
        assert self.pipeline is not None
        return await self.pipeline.fetch_metadata(query)


class MusicCog(commands.Cog):
    def __init__(self, bot: MusicBot) -> None:
        self.bot = bot

    async def _ensure_voice(self, ctx: commands.Context) -> Optional[discord.VoiceClient]:
        author = ctx.author
        if not isinstance(author, discord.Member) or not author.voice or not author.voice.channel:
            await ctx.reply("Tienes que estar en un canal de voz.")
            return None
        channel = author.voice.channel
        voice_client = ctx.voice_client
        if voice_client is None:
            return await channel.connect()
        if voice_client.channel.id != channel.id:
            await voice_client.move_to(channel)
        return voice_client

    def _on_finished(self, session: Optional[PipelineSession], error: Optional[Exception]) -> None:
        # Se ejecuta en el hilo del reproductor.
        if error is not None:
            logger.warning("La reproducción terminó con error: %s", error)
        if session is not None:
            self.bot.loop.call_soon_threadsafe(session.request_close, "playback_finished")

    @commands.command(name="play", help="Reproduce una búsqueda o URL. Filtro opcional: !play nightcore | consulta")
    async def play(self, ctx: commands.Context, *, raw: str) -> None:
        filter_name, query = split_filter_argument(raw)
        try:
            query = validate_query(query)
            filter_spec = parse_filter(filter_name) if filter_name else NO_FILTER
            track = await self.bot.get_track_info(query)
        except AudioSourceError as exc:
            logger.info("play rechazado: %s", exc, extra={"query": query})
            await ctx.reply(friendly_error_message(exc))
            return

        voice_client = await self._ensure_voice(ctx)
        if voice_client is None:
            return
        if voice_client.is_playing() or voice_client.is_paused():
            voice_client.stop()

        guild_id = ctx.guild.id
        state = self.bot.playback.setdefault(guild_id, GuildPlayback())
        if state.session is not None:
            await state.session.close("replaced")
            state.session = None

        try:
            if self.bot.pipeline is not None:
                session = await self.bot.pipeline.stream_audio(
                    query, filter_spec=filter_spec, output_format="pcm"
                )
                source: discord.AudioSource = VoiceAudioSource(session)
                state.session = session
            else:
                assert self.bot.client_api is not None
                url = self.bot.client_api.stream_url(
                    query, filter_spec=filter_spec, output_format="webm"
                )
                source = discord.FFmpegPCMAudio(url, before_options="-nostdin", options="-vn")
        except AudioSourceError as exc:
            logger.warning("No se pudo iniciar la reproducción: %s", exc, extra={"query": query})
            await ctx.reply(friendly_error_message(exc))
            return

        state.track = track
        state.requested_by = str(ctx.author)
        state.filter_name = str(filter_spec)
        session_ref = state.session
        voice_client.play(source, after=lambda error: self._on_finished(session_ref, error))
        await ctx.reply(f"▶️ **{track.title}** · {track.author} ({format_duration(track.duration_seconds)})")

    @commands.command(name="stop", help="Detiene la reproducción y sale del canal")
    async def stop(self, ctx: commands.Context) -> None:
        state = self.bot.playback.pop(ctx.guild.id, None)
        voice_client = ctx.voice_client
        if voice_client is not None:
            voice_client.stop()
            await voice_client.disconnect()
        if state is not None and state.session is not None:
            await state.session.close("stopped")
        await ctx.reply("⏹️ Reproducción detenida.")

    @commands.command(name="np", help="Muestra la pista actual")
    async def now_playing(self, ctx: commands.Context) -> None:
        state = self.bot.playback.get(ctx.guild.id)
        if state is None or state.track is None:
            await ctx.reply("No hay nada sonando.")
            return
        track = state.track
        embed = discord.Embed(title=track.title, url=track.url or None)
        embed.add_field(name="Autor", value=track.author)
        embed.add_field(name="Duración", value=format_duration(track.duration_seconds))
        embed.add_field(name="Filtro", value=state.filter_name)
        if state.requested_by:
            embed.set_footer(text=f"Pedida por {state.requested_by}")
        if track.thumbnail_url:
            embed.set_thumbnail(url=track.thumbnail_url)
        await ctx.reply(embed=embed)


def main() -> None:
    if not DISCORD_TOKEN:
        raise SystemExit("Configura DISCORD_TOKEN para iniciar el bot de Discord.")
    configure_logging()
    bot = MusicBot()
    bot.run(DISCORD_TOKEN, log_handler=None)


if __name__ == "__main__":
    main()
