"""Bot-follower fraud detection engine shared by the api and worker services."""
