"""Jobs Engine: durable priority job queue with retries and cron schedules."""
