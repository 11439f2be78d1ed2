"""Media processing: probing, ABR planning, HLS transcoding and manifests."""
