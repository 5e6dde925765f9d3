"""
FLV demuxing package.

Provides a pure Python, streaming FLV demuxer:

- flv_tags: FLV wire constants, parsed records and the incremental tag reader
- flv_demuxer: Async driver and tag dispatcher (audio/video/metadata)
- demux_sink: Per-track output streams with ack-based backpressure
- aac_repacker: AudioSpecificConfig parsing and ADTS framing of raw AAC
- amf0: AMF0 decoder for script-data (metadata) tags
- media_source: File and HTTP byte sources
"""
