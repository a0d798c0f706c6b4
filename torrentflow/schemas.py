from typing import Literal

# "stream" serves byte ranges of the original file, "hls" the transcoded playlist.
DeliveryType = Literal["stream", "hls"]
