# Part of Cadence - Licensed under GPL 3.0
# See LICENSE.md for details

"""
User-facing message table.

Messages are plain str.format() templates. Escape user-controlled values with
sanitize_for_format() before passing them in.
"""

MESSAGES = {
    # ===================================================================
    # VOICE CONNECTION
    # ===================================================================
    'connecting': "🔌 Connecting...",
    'connected': "👍 Connected to 🔈`{channel}`",
    'already_joined': "⚠️ I'm already playing in another channel.",
    'unable_to_join_permission': "I don't have permission to connect to that channel.",
    'failed_to_connect': "😑 Failed to connect: {error}",
    'issuer_no_voice_channel': "Join a voice channel first 😌",

    # ===================================================================
    # QUEUE
    # ===================================================================
    'please_wait': "Please wait...",
    'song_added': "✅ Added **{title}** to the queue ({length})",
    'failed_to_add': "✘ Failed to add to the queue",
    'invalid_url': "🔭 That doesn't look like something I can play.",
    'processing_playlist_before': "⌛ Processing playlist...",
    'processing_playlist': "⌛ Processing **{name}**: {current}/{total}",
    'processing_playlist_completed': "✅ Added {count} tracks from **{name}**",
    'processing_playlist_skipped': " ({skipped} unavailable tracks skipped)",
    'song_processing_in_progress': "⌛ Importing: {current}/{total}",
    'song_processing_completed': "✅ Imported {count} tracks",
    'canceled': "✅ Canceled",
    'cancel_sent': "🛑 Canceling running tasks...",
    'nothing_to_cancel': "Nothing to cancel.",
    'queue_empty': "The queue is empty.",
    'queue_cleared': "🧹 Cleared {count} tracks from the queue",
    'queue_header': "📃 **Queue** ({count} tracks, {length})",
    'queue_line': "`{index:>3}.` {marker}**{title}** ({length}) - {added_by}",
    'queue_more': "...and {more} more",
    'queue_flags': "Loop: {loop} | Queue loop: {queue_loop} | Related: {related} | Equal: {equal}",
    'removed': "🚮 Removed **{title}**",
    'moved': "✅ Moved **{title}** to position {index}",
    'shuffled': "🔀 Shuffled the queue",

    # ===================================================================
    # IMPORT / EXPORT
    # ===================================================================
    'import_loading': "🔍 Loading...",
    'import_invalid_argument': "❓ Give me a message link that has an exported queue attached.",
    'import_no_discord_link': "❌ That isn't a Discord message link.",
    'import_not_bot_message': "❌ That message wasn't sent by me.",
    'import_content_missing': "❌ That message has no exported queue attached.",
    'import_version_incompatible': "✘ This export isn't compatible (current: v{current}; file: v{file})",
    'export_done': "✅ Exported {count} tracks",
    'failed': "😭 Failed...",

    # ===================================================================
    # PLAYBACK
    # ===================================================================
    'now_playing': "🎵 Now playing: **{title}** ({length})",
    'waiting_for_live': "⏳ Waiting for **{title}** to go live...",
    'playback_failed': "😖 Couldn't play **{title}**, skipping: {error}",
    'playback_failed_all': "😖 Couldn't play any track in the queue. Stopping.",
    'queue_finished': "⏹️ Queue finished.",
    'paused': "⏸️ Paused",
    'resumed': "▶️ Resumed",
    'skipped': "⏭️ Skipped **{title}**",
    'stopped': "⏹️ Stopped",
    'disconnected': "👋 Disconnected",
    'volume_set': "🔊 Volume set to {volume}%",
    'loop_state': "🔁 Track loop is now **{state}**",
    'queue_loop_state': "🔁 Queue loop is now **{state}**",
    'related_state': "➕ Auto-adding related tracks is now **{state}**",
    'related_unavailable': "\n⚠️ No related-video source is configured, set `sources.invidious_instance` in settings.yaml",
    'equal_state': "⚖️ Equal playback is now **{state}**",
    'effect_state': "🎛️ {effect} is now **{state}**",

    # ===================================================================
    # ERRORS
    # ===================================================================
    'error_not_playing': "😒 Nothing is playing.",
    'error_not_connected': "❌ I'm not connected to voice!",
    'error_invalid_number': "❌ That isn't a valid queue position.",
    'error_invalid_volume': "❌ Volume must be a number between 0 and 200.",
    'error_unknown_effect': "❌ Unknown effect. Available: {effects}",
    'error_missing_argument': "❓ Missing argument: `{name}`",
    'error_command_failed': "😭 Something went wrong running that command.",
}

__all__ = ['MESSAGES']
