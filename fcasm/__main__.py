from fcasm.asm import cli_main

cli_main()
