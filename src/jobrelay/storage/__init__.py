"""SQLite persistence shared by every pipeline stage."""
