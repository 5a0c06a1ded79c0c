"""Key-value store over the write-ahead log: hash index, record codec and store."""