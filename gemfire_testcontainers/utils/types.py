import pathlib as pl
import typing as tp

FileType = str | pl.Path
# Local file path or raw file content
FileOrBytes = FileType | bytes
# Receives member name and a single log line
LogConsumer = tp.Callable[[str, str], None]
