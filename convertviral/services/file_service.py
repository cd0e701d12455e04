"""Format registry and upload validation helpers."""

import io
import math
import zipfile

from convertviral.errors import FileTooLargeError, ValidationError

MB = 1024 * 1024
FREE_SIZE_LIMIT = 50 * MB
PREMIUM_SIZE_LIMIT = 500 * MB
SIGNATURE_SNIFF_BYTES = 64

FILE_CATEGORIES = {
    'document': {'id': 'document', 'name': 'Documents', 'description': 'Document files like PDF, Word, Excel, etc.'},
    'image': {'id': 'image', 'name': 'Images', 'description': 'Image files like JPG, PNG, GIF, etc.'},
    'audio': {'id': 'audio', 'name': 'Audio', 'description': 'Audio files like MP3, WAV, FLAC, etc.'},
    'video': {'id': 'video', 'name': 'Video', 'description': 'Video files like MP4, AVI, MOV, etc.'},
    'archive': {'id': 'archive', 'name': 'Archives', 'description': 'Archive files like ZIP, RAR, etc.'},
    'ebook': {'id': 'ebook', 'name': 'Ebooks', 'description': 'Ebook files like EPUB, MOBI, etc.'},
}


def _fmt(extension, name, mime_types, category, description):
    return {
        'id': extension,
        'name': name,
        'extension': extension,
        'mimeTypes': list(mime_types),
        'category': category,
        'description': description,
    }


FILE_FORMATS = {
    'pdf': _fmt('pdf', 'PDF', ['application/pdf'], 'document', 'Portable Document Format'),
    'docx': _fmt('docx', 'Word Document', ['application/vnd.openxmlformats-officedocument.wordprocessingml.document'], 'document', 'Microsoft Word Document'),
    'doc': _fmt('doc', 'Word Document (Legacy)', ['application/msword'], 'document', 'Microsoft Word Document (Legacy)'),
    'xlsx': _fmt('xlsx', 'Excel Spreadsheet', ['application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'], 'document', 'Microsoft Excel Spreadsheet'),
    'xls': _fmt('xls', 'Excel Spreadsheet (Legacy)', ['application/vnd.ms-excel'], 'document', 'Microsoft Excel Spreadsheet (Legacy)'),
    'pptx': _fmt('pptx', 'PowerPoint Presentation', ['application/vnd.openxmlformats-officedocument.presentationml.presentation'], 'document', 'Microsoft PowerPoint Presentation'),
    'ppt': _fmt('ppt', 'PowerPoint Presentation (Legacy)', ['application/vnd.ms-powerpoint'], 'document', 'Microsoft PowerPoint Presentation (Legacy)'),
    'txt': _fmt('txt', 'Text File', ['text/plain'], 'document', 'Plain Text File'),
    'jpg': _fmt('jpg', 'JPEG Image', ['image/jpeg'], 'image', 'JPEG Image Format'),
    'png': _fmt('png', 'PNG Image', ['image/png'], 'image', 'Portable Network Graphics'),
    'gif': _fmt('gif', 'GIF Image', ['image/gif'], 'image', 'Graphics Interchange Format'),
    'webp': _fmt('webp', 'WebP Image', ['image/webp'], 'image', 'Web Picture Format'),
    'svg': _fmt('svg', 'SVG Image', ['image/svg+xml'], 'image', 'Scalable Vector Graphics'),
    'heic': _fmt('heic', 'HEIC Image', ['image/heic', 'image/heif'], 'image', 'High Efficiency Image Format'),
    'raw': _fmt('raw', 'RAW Image', ['image/x-raw'], 'image', 'Camera Raw Image Format'),
    'mp3': _fmt('mp3', 'MP3 Audio', ['audio/mpeg'], 'audio', 'MPEG Audio Layer III'),
    'wav': _fmt('wav', 'WAV Audio', ['audio/wav', 'audio/x-wav'], 'audio', 'Waveform Audio File Format'),
    'ogg': _fmt('ogg', 'OGG Audio', ['audio/ogg'], 'audio', 'Ogg Vorbis Audio Format'),
    'flac': _fmt('flac', 'FLAC Audio', ['audio/flac'], 'audio', 'Free Lossless Audio Codec'),
    'm4a': _fmt('m4a', 'M4A Audio', ['audio/mp4', 'audio/x-m4a'], 'audio', 'MPEG-4 Audio Layer'),
    'mp4': _fmt('mp4', 'MP4 Video', ['video/mp4'], 'video', 'MPEG-4 Video Format'),
    'avi': _fmt('avi', 'AVI Video', ['video/x-msvideo'], 'video', 'Audio Video Interleave'),
    'mov': _fmt('mov', 'QuickTime Video', ['video/quicktime'], 'video', 'Apple QuickTime Movie'),
    'webm': _fmt('webm', 'WebM Video', ['video/webm'], 'video', 'Web Media Video Format'),
    'mkv': _fmt('mkv', 'MKV Video', ['video/x-matroska'], 'video', 'Matroska Video Format'),
    'zip': _fmt('zip', 'ZIP Archive', ['application/zip'], 'archive', 'ZIP Compressed Archive'),
    'rar': _fmt('rar', 'RAR Archive', ['application/x-rar-compressed'], 'archive', 'RAR Compressed Archive'),
    'epub': _fmt('epub', 'EPUB Ebook', ['application/epub+zip'], 'ebook', 'Electronic Publication'),
    'mobi': _fmt('mobi', 'MOBI Ebook', ['application/x-mobipocket-ebook'], 'ebook', 'Mobipocket Ebook Format'),
}

# Targets that are not registered formats (csv) are dropped on lookup.
COMPATIBILITY_MAP = {
    'pdf': ['docx', 'xlsx', 'pptx', 'jpg', 'png'],
    'docx': ['pdf', 'txt'],
    'doc': ['pdf', 'docx', 'txt'],
    'xlsx': ['pdf', 'csv'],
    'xls': ['pdf', 'xlsx', 'csv'],
    'pptx': ['pdf', 'jpg'],
    'ppt': ['pdf', 'pptx', 'jpg'],
    'txt': ['pdf', 'docx'],
    'jpg': ['png', 'webp', 'pdf'],
    'png': ['jpg', 'webp', 'pdf'],
    'webp': ['jpg', 'png'],
    'gif': ['jpg', 'png'],
    'svg': ['png', 'jpg', 'pdf'],
    'heic': ['jpg', 'png'],
    'raw': ['jpg', 'png'],
    'mp3': ['wav', 'ogg', 'flac'],
    'wav': ['mp3', 'ogg', 'flac'],
    'ogg': ['mp3', 'wav'],
    'flac': ['mp3', 'wav'],
    'm4a': ['mp3', 'wav'],
    'mp4': ['webm', 'gif'],
    'avi': ['mp4', 'webm'],
    'mov': ['mp4', 'webm'],
    'webm': ['mp4'],
    'mkv': ['mp4', 'webm'],
}

COMPLEX_CONVERSIONS = {
    'pdf-docx', 'docx-pdf', 'pdf-xlsx', 'xlsx-pdf', 'pdf-pptx', 'pptx-pdf',
    'mov-mp4', 'avi-mp4', 'mkv-mp4', 'webm-mp4',
    'flac-mp3', 'wav-mp3',
    'raw-jpg', 'heic-jpg',
}

OOXML_MAIN_PART = {
    'docx': 'word/document.xml',
    'xlsx': 'xl/workbook.xml',
    'pptx': 'ppt/presentation.xml',
}
OLE_SIGNATURE = b'\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1'
ZIP_SIGNATURE = b'PK\x03\x04'


def normalize_extension(extension):
    return str(extension or '').strip().lower().lstrip('.')


def file_extension(filename):
    name = str(filename or '')
    if '.' not in name:
        return ''
    return normalize_extension(name.rsplit('.', 1)[1])


def get_all_categories():
    return list(FILE_CATEGORIES.values())


def get_formats_by_category(category):
    return [fmt for fmt in FILE_FORMATS.values() if fmt['category'] == category]


def get_format_by_extension(extension):
    return FILE_FORMATS.get(normalize_extension(extension))


def get_format_by_mimetype(mime_type):
    mime = str(mime_type or '').split(';', 1)[0].strip().lower()
    for fmt in FILE_FORMATS.values():
        if mime in fmt['mimeTypes']:
            return fmt
    return None


def get_compatible_target_formats(source_format):
    source = normalize_extension(source_format)
    if get_format_by_extension(source) is None:
        return []
    return [FILE_FORMATS[ext] for ext in COMPATIBILITY_MAP.get(source, []) if ext in FILE_FORMATS]


def conversion_matrix(formats=None):
    requested = formats if formats else list(FILE_FORMATS.keys())
    return {
        str(fmt): [target['extension'] for target in get_compatible_target_formats(fmt)]
        for fmt in requested
    }


def get_file_size_limit(is_premium):
    return PREMIUM_SIZE_LIMIT if is_premium else FREE_SIZE_LIMIT


def format_file_size(num_bytes):
    if not num_bytes:
        return '0 Bytes'
    sizes = ['Bytes', 'KB', 'MB', 'GB', 'TB']
    index = min(int(math.floor(math.log(num_bytes, 1024))), len(sizes) - 1)
    value = round(num_bytes / math.pow(1024, index), 2)
    return f"{value:g} {sizes[index]}"


def estimate_conversion_seconds(source_size, source_format, target_format):
    seconds = 2 + (source_size / MB) / 5
    if f"{normalize_extension(source_format)}-{normalize_extension(target_format)}" in COMPLEX_CONVERSIONS:
        seconds *= 1.5
    return int(math.ceil(seconds))


def validate_file_type(mime_type, extension):
    """Reject unknown types and MIME types that contradict the extension."""
    by_mime = get_format_by_mimetype(mime_type)
    by_ext = get_format_by_extension(extension)
    if by_mime is None and by_ext is None:
        raise ValidationError(f"Unsupported file type: {mime_type} ({extension})")
    if by_mime is not None and by_ext is not None and by_mime['id'] != by_ext['id']:
        raise ValidationError(f"MIME type {mime_type} does not match extension {extension}")


def validate_file_size(size_bytes, is_premium):
    limit = get_file_size_limit(is_premium)
    if size_bytes > limit:
        tier = 'premium' if is_premium else 'free'
        raise FileTooLargeError(
            f"File size exceeds the {limit // MB}MB limit for {tier} users",
            limit,
        )


def has_ooxml_part(data, extension):
    try:
        with zipfile.ZipFile(io.BytesIO(data), 'r') as archive:
            members = set(archive.namelist())
    except (zipfile.BadZipFile, ValueError):
        return False
    return '[Content_Types].xml' in members and OOXML_MAIN_PART[extension] in members


def header_has_audio_signature(header):
    if len(header) < 4:
        return False
    if header.startswith(b'ID3'):
        return True
    if header.startswith(b'RIFF') and header[8:12] == b'WAVE':
        return True
    if header.startswith(b'fLaC'):
        return True
    if header.startswith(b'OggS'):
        return True
    if header[4:8] == b'ftyp':
        return True
    return header[0] == 0xFF and (header[1] & 0xF0) == 0xF0


def content_matches_extension(data, extension):
    """Check the leading bytes against the declared extension.

    Formats without a reliable magic number (txt, svg, raw) always pass.
    """
    ext = normalize_extension(extension)
    header = bytes(data[:SIGNATURE_SNIFF_BYTES])
    if ext == 'pdf':
        return header.startswith(b'%PDF-')
    if ext in OOXML_MAIN_PART:
        return header.startswith(ZIP_SIGNATURE) and has_ooxml_part(data, ext)
    if ext in ('zip', 'epub'):
        return header.startswith(ZIP_SIGNATURE)
    if ext in ('doc', 'xls', 'ppt'):
        return header.startswith(OLE_SIGNATURE)
    if ext == 'jpg':
        return header.startswith(b'\xff\xd8\xff')
    if ext == 'png':
        return header.startswith(b'\x89PNG\r\n\x1a\n')
    if ext == 'gif':
        return header[:6] in (b'GIF87a', b'GIF89a')
    if ext == 'webp':
        return header.startswith(b'RIFF') and header[8:12] == b'WEBP'
    if ext in ('heic', 'mp4', 'mov', 'm4a'):
        return header[4:8] == b'ftyp'
    if ext in ('mp3', 'wav', 'ogg', 'flac'):
        return header_has_audio_signature(header)
    if ext == 'avi':
        return header.startswith(b'RIFF') and header[8:12] == b'AVI '
    if ext in ('webm', 'mkv'):
        return header.startswith(b'\x1a\x45\xdf\xa3')
    if ext == 'rar':
        return header.startswith(b'Rar!\x1a\x07')
    if ext == 'mobi':
        return bytes(data[60:68]) == b'BOOKMOBI'
    return True


def validate_upload(filename, mime_type, data, *, is_premium):
    """Run every upload check and return the matching format entry."""
    extension = file_extension(filename)
    fmt = get_format_by_extension(extension)
    if fmt is None:
        raise ValidationError('Unsupported file format')
    try:
        validate_file_type(mime_type, extension)
    except ValidationError as exc:
        raise ValidationError('Invalid file type') from exc
    validate_file_size(len(data), is_premium)
    if not content_matches_extension(data, extension):
        raise ValidationError('File content does not match its extension')
    return fmt
